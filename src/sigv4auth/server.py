"""FastAPI application factory for a SigV4-protected service.

The app is a thin host for the verifier: health endpoints, Prometheus
metrics, and a ``/whoami`` route that echoes the verified identity. Real
deployments mount their own routes on the returned app.
"""

import json
import logging
import secrets
import time

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from sigv4auth import metrics
from sigv4auth.config import SigV4AuthConfig
from sigv4auth.errors import InternalError
from sigv4auth.middleware import register_sigv4_middleware
from sigv4auth.resolvers import StaticCredential, StaticSigningKeyResolver
from sigv4auth.verifier import SigV4Verifier
from sigv4auth.xml_utils import error_response

logger = logging.getLogger(__name__)

# Module-level singleton so multiple create_app() calls (e.g. in tests)
# don't re-register the same Prometheus collectors in the global registry.
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


def create_static_resolver(config: SigV4AuthConfig) -> StaticSigningKeyResolver:
    """Build an in-memory resolver from the credentials in the config."""
    resolver = StaticSigningKeyResolver()
    for cred in config.auth.credentials:
        resolver.add(
            cred.access_key,
            StaticCredential(secret_key=cred.secret_key, session_token=cred.session_token),
        )
    return resolver


def create_app(config: SigV4AuthConfig, resolver=None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        config: The loaded configuration.
        resolver: The SigningKeyResolver to use. Defaults to a static
            resolver over ``config.auth.credentials``.

    Returns:
        A configured FastAPI application ready to run.
    """
    app = FastAPI(
        title="sigv4auth",
        version="0.1.0",
        openapi_url=None,
        docs_url=None,
        redoc_url=None,
    )
    app.state.config = config
    app.state.auth_enabled = config.auth.enabled
    app.state.verifier = SigV4Verifier(config.auth.to_settings())
    app.state.resolver = resolver if resolver is not None else create_static_resolver(config)

    _register_exception_handlers(app)

    # Starlette runs the most recently registered middleware first, so the
    # request-id/logging middleware wraps authentication.
    register_sigv4_middleware(app, skip_paths=config.auth.skip_paths)
    _register_common_middleware(app)

    if config.observability.metrics:
        metrics.init_metrics()
        _get_instrumentator().instrument(app, metric_namespace="sigv4auth").expose(
            app, endpoint="/metrics"
        )

    _setup_routes(app, config)

    logger.info(
        "SigV4 verification %s for service=%s region=%s",
        "enabled" if config.auth.enabled else "disabled",
        config.auth.service,
        config.auth.region,
    )
    return app


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------


def _register_exception_handlers(app: FastAPI) -> None:
    """Register exception handlers on the FastAPI app."""

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception) -> Response:
        """Catch unexpected exceptions and return InternalError."""
        logger.exception("Unhandled exception in request handler")
        request_id = getattr(request.state, "request_id", "")
        return error_response(InternalError(), request.method, request.url.path, request_id)


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------


def _register_common_middleware(app: FastAPI) -> None:
    """Register request-id and per-request logging middleware."""

    # Paths to suppress from per-request logging
    _QUIET_PATHS = {"/metrics", "/health", "/healthz"}

    @app.middleware("http")
    async def common_headers_middleware(request: Request, call_next) -> Response:
        """Assign a request id, time the request, and log it."""
        request_id = secrets.token_hex(8).upper()
        request.state.request_id = request_id
        start = time.monotonic()

        response = await call_next(request)

        duration_ms = round((time.monotonic() - start) * 1000, 2)
        response.headers["x-amz-request-id"] = request_id

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


# ---------------------------------------------------------------------------
# Route handlers
# ---------------------------------------------------------------------------


def _setup_routes(app: FastAPI, config: SigV4AuthConfig) -> None:
    """Register the health and identity routes."""
    health_check_enabled = config.observability.health_check

    @app.get("/health")
    async def health_check(request: Request) -> Response:
        """Return health status.

        When health_check is enabled, report whether a verifier and resolver
        are wired up; otherwise return a static ``{"status": "ok"}``.
        """
        if not health_check_enabled:
            return Response(content='{"status":"ok"}', media_type="application/json")

        verifier_ok = getattr(app.state, "verifier", None) is not None
        resolver_ok = getattr(app.state, "resolver", None) is not None
        all_ok = verifier_ok and resolver_ok
        body = json.dumps(
            {
                "status": "ok" if all_ok else "degraded",
                "checks": {
                    "verifier": {"status": "ok" if verifier_ok else "error"},
                    "resolver": {"status": "ok" if resolver_ok else "error"},
                },
                "auth_enabled": bool(getattr(app.state, "auth_enabled", True)),
            }
        )
        return Response(
            content=body,
            status_code=200 if all_ok else 503,
            media_type="application/json",
        )

    if health_check_enabled:

        @app.get("/healthz")
        async def healthz() -> Response:
            """Liveness probe. Returns 200 with empty body."""
            return Response(status_code=200)

    @app.api_route("/whoami", methods=["GET", "POST", "PUT"])
    async def whoami(request: Request) -> Response:
        """Echo the identity the middleware attached to the request."""
        return JSONResponse(
            content={
                "access_key": getattr(request.state, "access_key", None),
                "session_token": getattr(request.state, "session_token", None),
            }
        )
