"""Object-level S3 request handlers for fsgate.

Implements:
    - PutObject (PUT /{bucket}/{key})
    - GetObject (GET /{bucket}/{key}), streamed in 64 KB chunks
    - HeadObject (HEAD /{bucket}/{key})
    - DeleteObject (DELETE /{bucket}/{key})
    - ListObjects (GET /{bucket}?prefix=)
"""

import email.utils
import logging

from fastapi import FastAPI, Request, Response
from fastapi.responses import StreamingResponse

from fsgate.storage.models import ObjectInfo
from fsgate.xml_utils import render_list_objects, xml_response

logger = logging.getLogger(__name__)


def _object_headers(info: ObjectInfo) -> dict[str, str]:
    """Build the S3 response headers describing a stored object."""
    return {
        "Content-Type": info.content_type,
        "Content-Length": str(info.size),
        "Last-Modified": email.utils.format_datetime(info.last_modified, usegmt=True),
    }


class ObjectHandler:
    """Handles S3 object operations.

    Attributes:
        app: The parent FastAPI application.
    """

    def __init__(self, app: FastAPI) -> None:
        self.app = app

    @property
    def objects(self):
        """Shortcut to the object store on app.state."""
        return self.app.state.objects

    @property
    def listing(self):
        """Shortcut to the listing engine on app.state."""
        return self.app.state.listing

    @property
    def config(self):
        """Shortcut to the FsgateConfig on app.state."""
        return self.app.state.config

    async def put_object(self, request: Request, bucket: str, key: str) -> Response:
        """Store an object, replacing any previous content.

        Implements: PUT /{bucket}/{key}

        The body is streamed to disk and published atomically; the bucket
        directory is created if it does not exist yet.

        Returns:
            200 OK with the quoted MD5 ETag.
        """
        request.state.operation = "PutObject"
        result = await self.objects.put(
            bucket,
            key,
            request.stream(),
            max_size=self.config.server.max_request_size,
        )
        logger.debug("Stored %s/%s (%d bytes)", bucket, key, result.size)
        return Response(status_code=200, headers={"ETag": result.etag})

    async def get_object(self, request: Request, bucket: str, key: str) -> Response:
        """Stream an object's content.

        Implements: GET /{bucket}/{key}
        """
        request.state.operation = "GetObject"
        chunks, info = await self.objects.get(bucket, key)
        return StreamingResponse(
            content=chunks,
            status_code=200,
            headers=_object_headers(info),
            media_type=info.content_type,
        )

    async def head_object(self, request: Request, bucket: str, key: str) -> Response:
        """Implements: HEAD /{bucket}/{key}"""
        request.state.operation = "HeadObject"
        info = await self.objects.head(bucket, key)
        return Response(status_code=200, headers=_object_headers(info))

    async def delete_object(self, request: Request, bucket: str, key: str) -> Response:
        """Delete an object.

        Implements: DELETE /{bucket}/{key}

        Idempotent: returns 204 whether or not the key existed.
        """
        request.state.operation = "DeleteObject"
        await self.objects.delete(bucket, key)
        return Response(status_code=204)

    async def list_objects(self, request: Request, bucket: str) -> Response:
        """List the objects of a bucket under an optional prefix.

        Implements: GET /{bucket}?prefix=

        A bucket that does not exist lists as empty.
        """
        request.state.operation = "ListObjects"
        prefix = request.query_params.get("prefix", "")
        entries = await self.listing.list(bucket, prefix)
        return xml_response(render_list_objects(bucket, prefix, entries))
