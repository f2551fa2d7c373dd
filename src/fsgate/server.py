"""FastAPI application factory and route setup for fsgate."""

import base64
import email.utils
import json
import logging
import secrets
import time
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

import fsgate.metrics as _metrics
from fsgate.auth import AccessGate
from fsgate.config import FsgateConfig
from fsgate.errors import (
    InternalError,
    InvalidRequest,
    MethodNotAllowed,
    MissingBucket,
    RequestTooLarge,
    S3Error,
)
from fsgate.handlers.bucket import BucketHandler
from fsgate.handlers.multipart import MultipartHandler
from fsgate.handlers.object import ObjectHandler
from fsgate.storage.listing import ListingEngine
from fsgate.storage.multipart import MultipartUploadManager
from fsgate.storage.objects import ObjectStore
from fsgate.xml_utils import render_error, xml_response

logger = logging.getLogger(__name__)

# Module-level singleton so multiple create_app() calls (e.g. in tests)
# don't re-register the same Prometheus gauge in the global registry.
_instrumentator = None


def _get_instrumentator():
    global _instrumentator
    if _instrumentator is None:
        from prometheus_fastapi_instrumentator import Instrumentator

        _instrumentator = Instrumentator(
            should_instrument_requests_inprogress=True,
            excluded_handlers=["/metrics"],
        )
    return _instrumentator


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def attach_storage(app: FastAPI, root_dir: str | Path) -> ObjectStore:
    """Build the storage components over ``root_dir`` and put them on app.state.

    The object store, the multipart manager and the listing engine share a
    single root; the manager's lock registry lives as long as the app.
    """
    objects = ObjectStore(root_dir)
    app.state.objects = objects
    app.state.uploads = MultipartUploadManager(objects)
    app.state.listing = ListingEngine(objects)
    return objects


def create_app(config: FsgateConfig) -> FastAPI:
    """Create and configure the fsgate FastAPI application.

    Middleware applies the common S3 headers to every response and runs the
    request gates (bucket present, access key allowed, body size) before any
    handler. S3Error exceptions raised by handlers are rendered as S3 error
    XML.

    Args:
        config: The loaded fsgate configuration.

    Returns:
        A configured FastAPI application ready to run.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Crash-only startup: every start is a recovery.

        Creates the storage root, removes orphan temp files and, when
        configured, reaps abandoned multipart sessions.
        """
        objects: ObjectStore = app.state.objects
        await objects.init()

        uploads: MultipartUploadManager = app.state.uploads
        stale_after = config.multipart.stale_upload_seconds
        if stale_after is not None:
            await uploads.reap_stale(stale_after)
        _metrics.set_active_uploads(uploads.active_sessions())

        if config.auth.enabled and not config.auth.allowed_access_keys:
            logger.warning("Access gate is enabled with an empty allow-list; every request will be denied")
        logger.info("fsgate ready, serving %s", objects.root)

        yield

        logger.info("fsgate shutting down")

    app = FastAPI(
        title="fsgate",
        version="0.1.0",
        lifespan=lifespan,
        openapi_url=None,
        docs_url=None,
        redoc_url=None,
    )
    app.state.config = config
    app.state.gate = AccessGate(config.auth.allowed_access_keys)
    attach_storage(app, config.storage.root_dir)

    _register_exception_handlers(app)
    _register_middleware(app, config)

    # /metrics must be registered before the /{bucket} catch-all.
    if config.observability.metrics:
        _metrics.init_metrics()
        _get_instrumentator().instrument(app, metric_namespace="fsgate").expose(
            app, endpoint="/metrics"
        )

    _setup_routes(app, config)

    return app


# ---------------------------------------------------------------------------
# Error rendering
# ---------------------------------------------------------------------------


def _error_response(request: Request, exc: S3Error) -> Response:
    """Render an S3Error as XML. HEAD responses carry no body."""
    if request.method == "HEAD":
        return Response(status_code=exc.http_status)

    body = render_error(
        code=exc.code,
        message=exc.message,
        resource=request.url.path,
        request_id=getattr(request.state, "request_id", ""),
        extra_fields=exc.extra_fields,
    )
    return xml_response(body, status=exc.http_status)


def _register_exception_handlers(app: FastAPI) -> None:
    """Register exception handlers on the FastAPI app."""

    @app.exception_handler(S3Error)
    async def s3_error_handler(request: Request, exc: S3Error) -> Response:
        """Catch S3Error exceptions and render S3 error XML responses."""
        return _error_response(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> Response:
        """Map routing errors (e.g. an unsupported method) to S3 error XML."""
        if exc.status_code == 405:
            return _error_response(request, MethodNotAllowed())
        return _error_response(
            request,
            S3Error(code="InvalidRequest", message=str(exc.detail), http_status=exc.status_code),
        )

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception) -> Response:
        """Catch unexpected exceptions and return InternalError."""
        logger.exception("Unhandled exception in request handler")
        return _error_response(request, InternalError())


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------


def _register_middleware(app: FastAPI, config: FsgateConfig) -> None:
    """Register middleware on the FastAPI app.

    The last registered middleware runs first. The gate is registered
    before common_headers so the execution order is
    common_headers -> gate -> handler, and gate rejections still carry
    the common headers.
    """

    # Non-S3 endpoints that skip the gate for GET only
    GATE_SKIP_PATHS = {"/health", "/metrics"}

    # Paths to suppress from per-request logging
    _QUIET_PATHS = {"/health", "/metrics"}

    metrics_enabled = config.observability.metrics

    @app.middleware("http")
    async def gate_middleware(request: Request, call_next) -> Response:
        """Reject requests before any storage side effect.

        Checks, in order: the first path segment names a bucket, the
        claimed access key is allow-listed, the declared body size is
        within bounds. Only GET is exempt on the health and metrics paths.

        Errors are rendered directly since FastAPI exception handlers do
        not catch exceptions raised from middleware.
        """
        cfg: FsgateConfig = app.state.config

        if request.method == "GET" and request.url.path in GATE_SKIP_PATHS:
            return await call_next(request)

        try:
            # "//key" names an empty bucket just like "/".
            if request.url.path.split("/")[1] == "":
                raise MissingBucket()

            if cfg.auth.enabled:
                gate: AccessGate = app.state.gate
                request.state.access_key = gate.check(request.headers.get("authorization"))

            declared = request.headers.get("content-length")
            if declared:
                try:
                    size = int(declared)
                except ValueError:
                    raise InvalidRequest("Invalid Content-Length header")
                if size > cfg.server.max_request_size:
                    raise RequestTooLarge()
        except S3Error as exc:
            request.state.operation = "Gate"
            return _error_response(request, exc)

        return await call_next(request)

    @app.middleware("http")
    async def common_headers_middleware(request: Request, call_next) -> Response:
        """Add common S3 response headers to every response.

        Generates x-amz-request-id (16-char uppercase hex), x-amz-id-2
        (base64), Date (RFC 1123) and Server. Stores request_id on
        request.state so error rendering can use it.

        When metrics are enabled, also counts the S3 operation by outcome and
        the request and response body bytes.
        """
        request_id = secrets.token_hex(8).upper()
        request.state.request_id = request_id
        start = time.monotonic()

        response = await call_next(request)

        duration_ms = round((time.monotonic() - start) * 1000, 2)

        response.headers["x-amz-request-id"] = request_id
        response.headers["x-amz-id-2"] = base64.b64encode(secrets.token_bytes(24)).decode()
        response.headers["Date"] = email.utils.formatdate(usegmt=True)
        response.headers["Server"] = "fsgate"

        if metrics_enabled:
            operation = getattr(request.state, "operation", None)
            if operation is not None:
                status = "success" if response.status_code < 400 else "error"
                _metrics.record_operation(operation, status)
            _metrics.record_bytes_received(_content_length(request.headers.get("content-length")))
            if request.method != "HEAD":
                _metrics.record_bytes_sent(_content_length(response.headers.get("content-length")))

        if request.url.path not in _QUIET_PATHS:
            logger.info(
                "%s %s %d %.2fms",
                request.method,
                request.url.path,
                response.status_code,
                duration_ms,
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status": response.status_code,
                    "duration_ms": duration_ms,
                    "request_id": request_id,
                    "access_key": getattr(request.state, "access_key", None),
                },
            )

        return response


def _content_length(value: str | None) -> int:
    """Parse a Content-Length header, treating anything malformed as zero."""
    if not value:
        return 0
    try:
        return int(value)
    except ValueError:
        return 0


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------


def _check_storage(app: FastAPI) -> dict:
    """Check that the storage root directory is usable.

    Returns a dict with ``status`` and ``latency_ms`` keys.
    """
    objects = getattr(app.state, "objects", None)
    if objects is None:
        return {"status": "error", "error": "object store not initialized", "latency_ms": 0}
    start = time.monotonic()
    ok = Path(objects.root).is_dir()
    latency = round((time.monotonic() - start) * 1000, 1)
    if not ok:
        return {"status": "error", "error": "data directory not found", "latency_ms": latency}
    return {"status": "ok", "latency_ms": latency}


# ---------------------------------------------------------------------------
# Route handlers
# ---------------------------------------------------------------------------


def _setup_routes(app: FastAPI, config: FsgateConfig) -> None:
    """Register all S3-compatible routes on the application.

    Fixed routes (/health, /metrics) must be registered before the
    /{bucket} catch-all routes.

    Args:
        app: The FastAPI application to attach routes to.
        config: The fsgate configuration.
    """
    bucket_handler = BucketHandler(app)
    object_handler = ObjectHandler(app)
    multipart_handler = MultipartHandler(app)

    health_check_enabled = config.observability.health_check

    @app.get("/health")
    async def health_check(request: Request) -> Response:
        """Return health status.

        When health_check is enabled the storage root is checked and a
        failing check answers 503. When disabled: static ``{"status": "ok"}``.
        """
        if not health_check_enabled:
            return Response(content='{"status":"ok"}', media_type="application/json")

        storage_check = _check_storage(app)
        all_ok = storage_check["status"] == "ok"
        body = json.dumps(
            {
                "status": "ok" if all_ok else "degraded",
                "checks": {"storage": storage_check},
            }
        )
        return Response(
            content=body,
            status_code=200 if all_ok else 503,
            media_type="application/json",
        )

    # Bucket-level routes
    @app.put("/{bucket}")
    async def handle_bucket_put(bucket: str, request: Request) -> Response:
        """Handle PUT /{bucket} -- CreateBucket."""
        return await bucket_handler.create_bucket(request, bucket)

    @app.delete("/{bucket}")
    async def handle_bucket_delete(bucket: str, request: Request) -> Response:
        """Handle DELETE /{bucket} -- DeleteBucket."""
        return await bucket_handler.delete_bucket(request, bucket)

    @app.head("/{bucket}")
    async def handle_bucket_head(bucket: str, request: Request) -> Response:
        """Handle HEAD /{bucket} -- HeadBucket."""
        return await bucket_handler.head_bucket(request, bucket)

    @app.get("/{bucket}")
    async def handle_bucket_get(bucket: str, request: Request) -> Response:
        """Handle GET /{bucket} -- ListObjects."""
        return await object_handler.list_objects(request, bucket)

    @app.post("/{bucket}")
    async def handle_bucket_post(bucket: str, request: Request) -> Response:
        """Handle POST /{bucket} -- not a supported operation."""
        return await bucket_handler.post_bucket(request, bucket)

    # Object-level routes (key can contain slashes via {key:path}). An empty
    # key ("/bucket/") addresses the bucket itself.
    @app.put("/{bucket}/{key:path}")
    async def handle_object_put(bucket: str, key: str, request: Request) -> Response:
        """Handle PUT /{bucket}/{key} -- dispatches by query params.

        ?partNumber or ?uploadId -> UploadPart
        otherwise -> PutObject
        """
        if not key:
            return await bucket_handler.create_bucket(request, bucket)
        if "uploadId" in request.query_params or "partNumber" in request.query_params:
            return await multipart_handler.upload_part(request, bucket, key)
        return await object_handler.put_object(request, bucket, key)

    @app.head("/{bucket}/{key:path}")
    async def handle_object_head(bucket: str, key: str, request: Request) -> Response:
        """Handle HEAD /{bucket}/{key} -- HeadObject."""
        if not key:
            return await bucket_handler.head_bucket(request, bucket)
        return await object_handler.head_object(request, bucket, key)

    @app.get("/{bucket}/{key:path}")
    async def handle_object_get(bucket: str, key: str, request: Request) -> Response:
        """Handle GET /{bucket}/{key} -- GetObject."""
        if not key:
            return await object_handler.list_objects(request, bucket)
        return await object_handler.get_object(request, bucket, key)

    @app.delete("/{bucket}/{key:path}")
    async def handle_object_delete(bucket: str, key: str, request: Request) -> Response:
        """Handle DELETE /{bucket}/{key} -- dispatches by query params.

        ?uploadId -> AbortMultipartUpload
        otherwise -> DeleteObject
        """
        if not key:
            return await bucket_handler.delete_bucket(request, bucket)
        if "uploadId" in request.query_params:
            return await multipart_handler.abort_multipart_upload(request, bucket, key)
        return await object_handler.delete_object(request, bucket, key)

    @app.post("/{bucket}/{key:path}")
    async def handle_object_post(bucket: str, key: str, request: Request) -> Response:
        """Handle POST /{bucket}/{key} -- dispatches by query params.

        ?uploads -> CreateMultipartUpload
        ?uploadId -> CompleteMultipartUpload
        """
        if not key:
            return await bucket_handler.post_bucket(request, bucket)
        if "uploads" in request.query_params:
            return await multipart_handler.create_multipart_upload(request, bucket, key)
        if "uploadId" in request.query_params:
            return await multipart_handler.complete_multipart_upload(request, bucket, key)
        raise InvalidRequest("POST on an object requires ?uploads or ?uploadId")
