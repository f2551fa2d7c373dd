"""Multipart upload S3 request handlers for fsgate.

Implements:
    - CreateMultipartUpload (POST /{bucket}/{key}?uploads)
    - UploadPart (PUT /{bucket}/{key}?partNumber&uploadId)
    - CompleteMultipartUpload (POST /{bucket}/{key}?uploadId)
    - AbortMultipartUpload (DELETE /{bucket}/{key}?uploadId)

Session layout, locking and merge live in fsgate.storage.multipart; these
handlers only translate between HTTP and the manager.
"""

import logging

from fastapi import FastAPI, Request, Response

import fsgate.metrics as _metrics
from fsgate.errors import InvalidRequest, RequestTooLarge
from fsgate.storage.multipart import parse_part_number
from fsgate.xml_utils import (
    parse_complete_multipart_upload,
    render_complete_multipart_upload,
    render_initiate_multipart_upload,
    xml_response,
)

logger = logging.getLogger(__name__)


async def read_body(request: Request, max_size: int) -> bytes:
    """Buffer a request body, refusing it once it exceeds ``max_size`` bytes.

    Covers chunked bodies, which carry no Content-Length for the gate to check.
    """
    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > max_size:
            raise RequestTooLarge()
    return bytes(body)


class MultipartHandler:
    """Handles S3 multipart upload operations.

    Attributes:
        app: The parent FastAPI application.
    """

    def __init__(self, app: FastAPI) -> None:
        self.app = app

    @property
    def uploads(self):
        """Shortcut to the multipart upload manager on app.state."""
        return self.app.state.uploads

    @property
    def config(self):
        """Shortcut to the FsgateConfig on app.state."""
        return self.app.state.config

    async def create_multipart_upload(self, request: Request, bucket: str, key: str) -> Response:
        """Start a new upload session.

        Implements: POST /{bucket}/{key}?uploads

        Returns:
            InitiateMultipartUploadResult XML carrying the new upload id.
        """
        request.state.operation = "CreateMultipartUpload"
        upload_id = await self.uploads.initiate(bucket, key)
        _metrics.uploads_started()
        return xml_response(render_initiate_multipart_upload(bucket, key, upload_id))

    async def upload_part(self, request: Request, bucket: str, key: str) -> Response:
        """Store one numbered part of an upload.

        Implements: PUT /{bucket}/{key}?partNumber={n}&uploadId={id}

        Returns:
            200 OK with the part's quoted MD5 ETag.
        """
        request.state.operation = "UploadPart"
        params = request.query_params
        if "partNumber" not in params or "uploadId" not in params:
            raise InvalidRequest("UploadPart requires both partNumber and uploadId")
        part_number = parse_part_number(params["partNumber"])
        result = await self.uploads.upload_part(
            bucket,
            key,
            params["uploadId"],
            part_number,
            request.stream(),
            max_size=self.config.server.max_request_size,
        )
        return Response(status_code=200, headers={"ETag": result.etag})

    async def complete_multipart_upload(self, request: Request, bucket: str, key: str) -> Response:
        """Merge the listed parts into the destination object.

        Implements: POST /{bucket}/{key}?uploadId={id}

        Parts are merged in ascending part-number order regardless of the
        order in the request body.

        Returns:
            CompleteMultipartUploadResult XML with the composite ETag.
        """
        request.state.operation = "CompleteMultipartUpload"
        upload_id = request.query_params.get("uploadId", "")
        self.uploads.require_session(bucket, key, upload_id)
        payload = await read_body(request, self.config.server.max_request_size)
        parts = parse_complete_multipart_upload(payload)

        completed = await self.uploads.complete(bucket, key, upload_id, parts)
        _metrics.uploads_finished()

        location = str(request.url.replace(query=""))
        body = render_complete_multipart_upload(
            location=location,
            bucket=bucket,
            key=key,
            etag=completed.etag,
            upload_id=upload_id,
        )
        return xml_response(body)

    async def abort_multipart_upload(self, request: Request, bucket: str, key: str) -> Response:
        """Discard an upload session and its parts.

        Implements: DELETE /{bucket}/{key}?uploadId={id}

        Returns:
            204 No Content on success.
        """
        request.state.operation = "AbortMultipartUpload"
        await self.uploads.abort(bucket, key, request.query_params.get("uploadId", ""))
        _metrics.uploads_finished()
        return Response(status_code=204)
