"""FastAPI integration for SigV4 verification.

The middleware turns each request into a SigV4Request, runs the verifier,
and either lets the request through with the verified identity on
``request.state`` or answers with a generic XML denial. The verifier and
resolver are read from ``app.state`` per request so they can be swapped at
runtime (and in tests).
"""

import logging
import secrets
from collections.abc import Iterable

from fastapi import FastAPI, Request, Response

from sigv4auth.errors import InternalError
from sigv4auth.models import Authenticated, Rejected, SigV4Request
from sigv4auth.xml_utils import error_response

logger = logging.getLogger(__name__)


def register_sigv4_middleware(app: FastAPI, skip_paths: Iterable[str] = ()) -> None:
    """Register the SigV4 authentication middleware on a FastAPI app.

    The app must carry ``app.state.verifier`` (a SigV4Verifier) and
    ``app.state.resolver`` (a SigningKeyResolver). Setting
    ``app.state.auth_enabled`` to False lets every request through.

    On success the middleware sets ``request.state.access_key`` and
    ``request.state.session_token``. FastAPI exception handlers do not see
    exceptions raised in middleware, so denials are rendered here directly.

    Args:
        app: The FastAPI application.
        skip_paths: Paths served without authentication.
    """
    unauthenticated_paths = frozenset(skip_paths)

    @app.middleware("http")
    async def sigv4_auth_middleware(request: Request, call_next) -> Response:
        """SigV4 authentication middleware."""
        if request.url.path in unauthenticated_paths:
            return await call_next(request)
        if not getattr(app.state, "auth_enabled", True):
            return await call_next(request)

        request_id = getattr(request.state, "request_id", "") or secrets.token_hex(8).upper()
        verifier = getattr(app.state, "verifier", None)
        resolver = getattr(app.state, "resolver", None)
        if verifier is None or resolver is None:
            # Never fail open: a missing verifier is a deployment bug.
            logger.error("SigV4 middleware has no verifier or resolver configured")
            return error_response(InternalError(), request.method, request.url.path, request_id)

        sig_request = await SigV4Request.from_starlette(request)
        outcome = await verifier.verify(sig_request, resolver)

        if isinstance(outcome, Authenticated):
            request.state.access_key = outcome.access_key_id
            request.state.session_token = outcome.session_token
            return await call_next(request)

        failure = outcome.reason if isinstance(outcome, Rejected) else outcome.cause
        return error_response(failure, request.method, request.url.path, request_id)
