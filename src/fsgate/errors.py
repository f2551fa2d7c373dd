"""S3-compatible error definitions for fsgate."""


class S3Error(Exception):
    """An S3-compatible error with code, message, and HTTP status.

    Attributes:
        code: The S3 error code string (e.g. "NoSuchKey", "AccessDenied").
        message: Human-readable error description.
        http_status: The HTTP status code to return.
        extra_fields: Additional key-value pairs to include in the XML error response.
    """

    def __init__(
        self,
        code: str,
        message: str,
        http_status: int = 400,
        extra_fields: dict[str, str] | None = None,
    ) -> None:
        """Initialize the S3 error.

        Args:
            code: S3 error code.
            message: Error description.
            http_status: HTTP status code (default 400).
            extra_fields: Optional extra XML fields.
        """
        super().__init__(message)
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra_fields = extra_fields or {}


# -- Gate errors --------------------------------------------------------------


class AccessDenied(S3Error):
    """The claimed access key is missing or not allow-listed."""

    def __init__(self, message: str = "Access Denied") -> None:
        super().__init__(code="AccessDenied", message=message, http_status=401)


class MissingBucket(S3Error):
    """The request path does not name a bucket."""

    def __init__(self, message: str = "Bucket name not specified") -> None:
        super().__init__(code="MissingBucket", message=message, http_status=400)


class RequestTooLarge(S3Error):
    """The request body exceeds the configured maximum size."""

    def __init__(self, message: str = "Request too large") -> None:
        super().__init__(code="RequestTooLarge", message=message, http_status=413)


class MethodNotAllowed(S3Error):
    """The specified method is not allowed against this resource."""

    def __init__(
        self, message: str = "The specified method is not allowed against this resource."
    ) -> None:
        super().__init__(code="MethodNotAllowed", message=message, http_status=405)


# -- Addressing errors ----------------------------------------------------------


class InvalidKey(S3Error):
    """The object key cannot be mapped safely into the bucket."""

    def __init__(self, message: str = "The specified key is not valid.") -> None:
        super().__init__(code="InvalidKey", message=message, http_status=400)


class InvalidBucketName(S3Error):
    """The specified bucket name is not valid."""

    def __init__(self, bucket: str = "") -> None:
        super().__init__(
            code="InvalidBucketName",
            message="The specified bucket is not valid.",
            http_status=400,
            extra_fields={"BucketName": bucket} if bucket else {},
        )


class NoSuchBucket(S3Error):
    """The specified bucket does not exist."""

    def __init__(self, bucket: str = "") -> None:
        super().__init__(
            code="NoSuchBucket",
            message="The specified bucket does not exist.",
            http_status=404,
            extra_fields={"BucketName": bucket} if bucket else {},
        )


class BucketNotEmpty(S3Error):
    """The bucket is not empty and cannot be deleted."""

    def __init__(self, bucket: str = "") -> None:
        super().__init__(
            code="BucketNotEmpty",
            message="The bucket you tried to delete is not empty.",
            http_status=409,
            extra_fields={"BucketName": bucket} if bucket else {},
        )


class NoSuchKey(S3Error):
    """The specified key does not exist."""

    def __init__(self, key: str = "") -> None:
        super().__init__(
            code="NoSuchKey",
            message="The specified key does not exist.",
            http_status=404,
            extra_fields={"Key": key} if key else {},
        )


# -- Multipart errors -------------------------------------------------------------


class NoSuchUpload(S3Error):
    """The specified multipart upload does not exist."""

    def __init__(self, upload_id: str = "") -> None:
        super().__init__(
            code="NoSuchUpload",
            message="The specified multipart upload does not exist.",
            http_status=404,
            extra_fields={"UploadId": upload_id} if upload_id else {},
        )


class InvalidPart(S3Error):
    """A part referenced at completion time was never uploaded.

    Reported with HTTP 500, not the 400 AWS uses.
    """

    def __init__(
        self, message: str = "One or more of the specified parts could not be found."
    ) -> None:
        super().__init__(code="InvalidPart", message=message, http_status=500)


class InvalidRequest(S3Error):
    """The request is not valid."""

    def __init__(self, message: str = "Invalid Request") -> None:
        super().__init__(code="InvalidRequest", message=message, http_status=400)


# -- Server errors ------------------------------------------------------------------


class InternalError(S3Error):
    """An internal server error occurred."""

    def __init__(
        self, message: str = "We encountered an internal error. Please try again."
    ) -> None:
        super().__init__(code="InternalError", message=message, http_status=500)
