"""S3 XML rendering and parsing helpers for fsgate."""

import xml.etree.ElementTree as ET
from datetime import datetime
from xml.sax.saxutils import escape as _sax_escape

from fastapi.responses import Response

from fsgate.errors import InvalidRequest
from fsgate.storage.models import ObjectInfo

S3_NAMESPACE = "http://s3.amazonaws.com/doc/2006-03-01/"

# Listings are never paginated; MaxKeys is reported for client compatibility.
LIST_MAX_KEYS = 1000


def _escape_xml(value: str) -> str:
    """Escape special XML characters in a string value.

    Args:
        value: The raw string to escape.

    Returns:
        The XML-safe escaped string.
    """
    return _sax_escape(str(value))


def format_timestamp(dt: datetime) -> str:
    """Format a UTC datetime the way S3 listings do: ``2024-01-01T00:00:00.000Z``."""
    return dt.strftime("%Y-%m-%dT%H:%M:%S.000Z")


def render_error(
    code: str,
    message: str,
    resource: str = "",
    request_id: str = "",
    extra_fields: dict[str, str] | None = None,
) -> str:
    """Render an S3 XML error response body.

    The Error element has NO XML namespace (unlike success responses).

    Args:
        code: The S3 error code (e.g. "NoSuchKey").
        message: Human-readable error message.
        resource: The request path that triggered the error.
        request_id: An opaque request identifier.
        extra_fields: Additional XML elements to include.

    Returns:
        An XML string conforming to S3 error response format.
    """
    parts = [
        '<?xml version="1.0" encoding="UTF-8"?>',
        "<Error>",
        f"<Code>{_escape_xml(code)}</Code>",
        f"<Message>{_escape_xml(message)}</Message>",
        f"<Resource>{_escape_xml(resource)}</Resource>",
        f"<RequestId>{_escape_xml(request_id)}</RequestId>",
    ]
    if extra_fields:
        for key, value in extra_fields.items():
            parts.append(f"<{key}>{_escape_xml(value)}</{key}>")
    parts.append("</Error>")
    return "\n".join(parts)


def xml_response(body: str, status: int = 200) -> Response:
    """Wrap an XML body string in a FastAPI Response with correct content type."""
    return Response(
        content=body,
        status_code=status,
        media_type="application/xml",
    )


def render_list_objects(name: str, prefix: str, contents: list[ObjectInfo]) -> str:
    """Render an S3 ListBucketResult for a prefix listing.

    Args:
        name: Bucket name.
        prefix: Key prefix filter as supplied by the client.
        contents: Matching objects, already sorted.

    Returns:
        An XML string for ListBucketResult.
    """
    parts = [
        '<?xml version="1.0" encoding="UTF-8"?>',
        f'<ListBucketResult xmlns="{S3_NAMESPACE}">',
        f"<Name>{_escape_xml(name)}</Name>",
        f"<Prefix>{_escape_xml(prefix)}</Prefix>",
        f"<MaxKeys>{LIST_MAX_KEYS}</MaxKeys>",
        "<IsTruncated>false</IsTruncated>",
    ]

    for obj in contents:
        parts.append("<Contents>")
        parts.append(f"<Key>{_escape_xml(obj.key)}</Key>")
        parts.append(f"<LastModified>{format_timestamp(obj.last_modified)}</LastModified>")
        parts.append(f"<Size>{obj.size}</Size>")
        parts.append("<StorageClass>STANDARD</StorageClass>")
        parts.append("</Contents>")

    parts.append("</ListBucketResult>")
    return "\n".join(parts)


def render_initiate_multipart_upload(bucket: str, key: str, upload_id: str) -> str:
    """Render an S3 InitiateMultipartUploadResult."""
    parts = [
        '<?xml version="1.0" encoding="UTF-8"?>',
        f'<InitiateMultipartUploadResult xmlns="{S3_NAMESPACE}">',
        f"<Bucket>{_escape_xml(bucket)}</Bucket>",
        f"<Key>{_escape_xml(key)}</Key>",
        f"<UploadId>{_escape_xml(upload_id)}</UploadId>",
        "</InitiateMultipartUploadResult>",
    ]
    return "\n".join(parts)


def render_complete_multipart_upload(
    location: str,
    bucket: str,
    key: str,
    etag: str,
    upload_id: str,
) -> str:
    """Render an S3 CompleteMultipartUploadResult.

    Args:
        location: Full URL of the created object.
        bucket: Bucket name.
        key: Object key.
        etag: Composite ETag of the merged object.
        upload_id: Id of the completed upload session.

    Returns:
        An XML string for CompleteMultipartUploadResult.
    """
    parts = [
        '<?xml version="1.0" encoding="UTF-8"?>',
        f'<CompleteMultipartUploadResult xmlns="{S3_NAMESPACE}">',
        f"<Location>{_escape_xml(location)}</Location>",
        f"<Bucket>{_escape_xml(bucket)}</Bucket>",
        f"<Key>{_escape_xml(key)}</Key>",
        f"<ETag>{_escape_xml(etag)}</ETag>",
        f"<UploadId>{_escape_xml(upload_id)}</UploadId>",
        "</CompleteMultipartUploadResult>",
    ]
    return "\n".join(parts)


def parse_complete_multipart_upload(body: bytes) -> list[tuple[int, str]]:
    """Extract ``(part_number, etag)`` pairs from a CompleteMultipartUpload body.

    The S3 namespace is optional. A missing ETag element is read as an empty
    string since ETags are not checked at completion.

    Raises:
        InvalidRequest: If the body is not well-formed XML, a Part has no
            integer PartNumber, or no parts are listed.
    """
    try:
        root = ET.fromstring(body)
    except ET.ParseError:
        raise InvalidRequest("The XML you provided was not well-formed.")

    ns = ""
    if root.tag.startswith("{"):
        ns = root.tag[: root.tag.index("}") + 1]

    parts: list[tuple[int, str]] = []
    for part_elem in root.findall(f"{ns}Part"):
        pn_elem = part_elem.find(f"{ns}PartNumber")
        etag_elem = part_elem.find(f"{ns}ETag")

        if pn_elem is None or pn_elem.text is None:
            raise InvalidRequest("Missing PartNumber element")
        try:
            part_number = int(pn_elem.text.strip())
        except ValueError:
            raise InvalidRequest(f"Invalid part number: {pn_elem.text.strip()}")

        etag = ""
        if etag_elem is not None and etag_elem.text is not None:
            etag = etag_elem.text.strip()
        parts.append((part_number, etag))

    if not parts:
        raise InvalidRequest("You must specify at least one part")
    return parts
