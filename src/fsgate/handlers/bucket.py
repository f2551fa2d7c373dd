"""Bucket-level S3 request handlers for fsgate.

A bucket is nothing more than a directory below the storage root, so these
operations map directly onto ObjectStore's bucket predicates.
"""

import logging

from fastapi import FastAPI, Request, Response

from fsgate.errors import InvalidRequest, NoSuchBucket

logger = logging.getLogger(__name__)


class BucketHandler:
    """Handles S3 bucket operations.

    Attributes:
        app: The parent FastAPI application.
    """

    def __init__(self, app: FastAPI) -> None:
        self.app = app

    @property
    def objects(self):
        """Shortcut to the object store on app.state."""
        return self.app.state.objects

    async def create_bucket(self, request: Request, bucket: str) -> Response:
        """Create a bucket directory.

        Implements: PUT /{bucket}

        Idempotent: creating an existing bucket succeeds.
        """
        request.state.operation = "CreateBucket"
        self.objects.ensure_bucket(bucket)
        logger.info("Created bucket %s", bucket, extra={"bucket": bucket})
        return Response(status_code=200, headers={"Location": f"/{bucket}"})

    async def head_bucket(self, request: Request, bucket: str) -> Response:
        """Implements: HEAD /{bucket}"""
        request.state.operation = "HeadBucket"
        if not self.objects.bucket_exists(bucket):
            raise NoSuchBucket(bucket)
        return Response(status_code=200)

    async def delete_bucket(self, request: Request, bucket: str) -> Response:
        """Remove an empty bucket.

        Implements: DELETE /{bucket}

        Raises:
            BucketNotEmpty: If any object or upload part remains.
        """
        request.state.operation = "DeleteBucket"
        self.objects.delete_bucket(bucket)
        logger.info("Deleted bucket %s", bucket, extra={"bucket": bucket})
        return Response(status_code=204)

    async def post_bucket(self, request: Request, bucket: str) -> Response:
        """POST /{bucket} names no supported operation."""
        request.state.operation = "PostBucket"
        raise InvalidRequest("POST on a bucket is not supported")
