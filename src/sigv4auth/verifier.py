"""AWS Signature Version 4 verification pipeline.

A verification runs a fixed sequence of stages against a per-call context:

    START -> PARSED -> CANONICALIZED -> KEY_RESOLVED -> DERIVED -> COMPARED

Each stage either advances the context to the next state or raises a
SigV4Error, which ends the run as Rejected (evidence against the signer) or
Errored (the verifier could not decide). Parsing, scope, and clock checks all
happen in the first stage, before the resolver is called or any HMAC runs.

References:
    - https://docs.aws.amazon.com/IAM/latest/UserGuide/reference_sigv-create-signed-request.html
"""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from sigv4auth import metrics
from sigv4auth.canonical import build_canonical_request
from sigv4auth.errors import (
    InternalError,
    InvalidCredentials,
    InvalidCredentialScope,
    KeyLookupError,
    SigV4Error,
)
from sigv4auth.keys import derive_signing_key
from sigv4auth.models import (
    Authenticated,
    CanonicalRequest,
    Errored,
    Rejected,
    SigningKeyKind,
    SigningKeyMaterial,
    SigV4Request,
    StringToSign,
    VerificationOutcome,
    VerificationState,
)
from sigv4auth.parser import (
    MAX_PRESIGNED_EXPIRES,
    ParsedAuth,
    RequestCredentialParser,
    check_clock_skew,
)
from sigv4auth.signature import build_string_to_sign, check_signature, compute_signature

logger = logging.getLogger(__name__)

ANY_REGION = "*"
DEFAULT_CLOCK_SKEW = timedelta(minutes=5)


@dataclass(frozen=True)
class VerifierSettings:
    """Settings consumed by the verifier.

    Attributes:
        service: Expected credential scope service.
        region: Expected credential scope region, or ANY_REGION.
        allowed_clock_skew: Allowed distance between request time and now;
            None disables the check.
        allow_unsigned_payload: Accept ``x-amz-content-sha256: UNSIGNED-PAYLOAD``.
        allow_presigned: Accept query-string (presigned) authentication.
        max_presigned_expires: Upper bound on X-Amz-Expires, in seconds.
        signing_key_kind: Kind of key requested from the resolver.
        normalize_uri_path: Collapse slashes and dot segments (False for S3).
        resolver_timeout: Seconds to wait for the resolver; None waits forever.
    """

    service: str
    region: str = "us-east-1"
    allowed_clock_skew: timedelta | None = DEFAULT_CLOCK_SKEW
    allow_unsigned_payload: bool = False
    allow_presigned: bool = False
    max_presigned_expires: int = MAX_PRESIGNED_EXPIRES
    signing_key_kind: SigningKeyKind = SigningKeyKind.SIGNING
    normalize_uri_path: bool = True
    resolver_timeout: float | None = 5.0


@dataclass
class VerificationContext:
    """Everything one verification call knows. Never shared between calls."""

    request: SigV4Request
    resolver: Any
    now: datetime
    state: VerificationState = VerificationState.START
    parsed: ParsedAuth | None = None
    canonical_request: CanonicalRequest | None = None
    string_to_sign: StringToSign | None = None
    key_material: SigningKeyMaterial | None = None
    signing_key: SigningKeyMaterial | None = None
    expected_signature: str | None = field(default=None, repr=False)

    def wipe(self) -> None:
        """Zero any key material still held by the context."""
        for material in (self.key_material, self.signing_key):
            if material is not None:
                material.wipe()
        self.expected_signature = None


class SigV4Verifier:
    """Verifies AWS Signature Version 4 signed requests.

    Holds only immutable settings; each call to ``verify`` builds its own
    context, so one verifier can serve concurrent requests.

    Attributes:
        settings: The verifier settings.
        parser: The credential parser built from the settings.
    """

    def __init__(self, settings: VerifierSettings) -> None:
        self.settings = settings
        self.parser = RequestCredentialParser(
            allow_presigned=settings.allow_presigned,
            max_presigned_expires=settings.max_presigned_expires,
        )
        self.stages: tuple[Callable[[VerificationContext], Any], ...] = (
            self.parse,
            self.canonicalize,
            self.resolve_key,
            self.derive,
            self.compare,
        )

    async def verify(
        self, request: SigV4Request, resolver: Any, now: datetime | None = None
    ) -> VerificationOutcome:
        """Run the full pipeline against a request.

        Args:
            request: The request to verify.
            resolver: A SigningKeyResolver, or a bare callable with the same
                signature as ``SigningKeyResolver.resolve``.
            now: Verification time (default: current UTC time).

        Returns:
            Authenticated, Rejected, or Errored.
        """
        ctx = VerificationContext(
            request=request, resolver=resolver, now=now or datetime.now(timezone.utc)
        )
        start = time.monotonic()
        try:
            for stage in self.stages:
                result = stage(ctx)
                if inspect.isawaitable(result):
                    await result
            outcome: VerificationOutcome = Authenticated(
                access_key_id=ctx.parsed.credential.access_key_id,
                session_token=ctx.parsed.session_token,
            )
        except SigV4Error as exc:
            outcome = self._failure(ctx, exc)
        except Exception:
            logger.exception("Unexpected failure during SigV4 verification")
            outcome = Errored(cause=InternalError(), stage=ctx.state)
        finally:
            ctx.wipe()

        metrics.observe_verification(outcome, time.monotonic() - start)
        return outcome

    # -- Stages ----------------------------------------------------------------

    def parse(self, ctx: VerificationContext) -> None:
        """START -> PARSED: extract auth data and run the cheap checks."""
        parsed = self.parser.parse(ctx.request, now=ctx.now)
        credential = parsed.credential

        if self.settings.region != ANY_REGION and credential.region != self.settings.region:
            raise InvalidCredentialScope(
                f"Credential region {credential.region!r} does not match {self.settings.region!r}."
            )
        if credential.service != self.settings.service:
            raise InvalidCredentialScope(
                f"Credential service {credential.service!r} does not match "
                f"{self.settings.service!r}."
            )
        check_clock_skew(parsed, ctx.now, self.settings.allowed_clock_skew)

        ctx.parsed = parsed
        ctx.state = VerificationState.PARSED

    def canonicalize(self, ctx: VerificationContext) -> None:
        """PARSED -> CANONICALIZED: build the canonical request and string to sign."""
        parsed = ctx.parsed
        ctx.canonical_request = build_canonical_request(
            ctx.request,
            parsed.signed_headers,
            presigned=parsed.presigned,
            allow_unsigned=self.settings.allow_unsigned_payload,
            normalize_path=self.settings.normalize_uri_path,
        )
        ctx.string_to_sign = build_string_to_sign(
            parsed.amz_date, parsed.credential, ctx.canonical_request
        )
        ctx.state = VerificationState.CANONICALIZED

    async def resolve_key(self, ctx: VerificationContext) -> None:
        """CANONICALIZED -> KEY_RESOLVED: ask the resolver for key material."""
        credential = ctx.parsed.credential
        resolve = getattr(ctx.resolver, "resolve", ctx.resolver)
        args = (
            self.settings.signing_key_kind,
            credential.access_key_id,
            ctx.parsed.session_token,
            credential.date,
            credential.region,
            credential.service,
        )

        try:
            if inspect.iscoroutinefunction(resolve):
                pending = resolve(*args)
            else:
                pending = asyncio.to_thread(resolve, *args)
            result = await asyncio.wait_for(pending, timeout=self.settings.resolver_timeout)
            if inspect.isawaitable(result):
                result = await asyncio.wait_for(result, timeout=self.settings.resolver_timeout)
        except SigV4Error:
            raise
        except TimeoutError:
            raise KeyLookupError("Signing key lookup timed out.")
        except asyncio.CancelledError:
            task = asyncio.current_task()
            if task is not None and task.cancelling():
                raise
            raise KeyLookupError("Signing key lookup was cancelled.")
        except Exception as exc:
            logger.warning(
                "Signing key lookup failed for %s: %s",
                credential.access_key_id,
                type(exc).__name__,
                extra={"access_key": credential.access_key_id},
            )
            raise KeyLookupError() from exc

        if result is None:
            raise InvalidCredentials()
        ctx.key_material = _check_resolved(result)
        ctx.state = VerificationState.KEY_RESOLVED

    def derive(self, ctx: VerificationContext) -> None:
        """KEY_RESOLVED -> DERIVED: finish the derivation chain."""
        ctx.signing_key = derive_signing_key(ctx.key_material, ctx.parsed.credential)
        ctx.key_material.wipe()
        ctx.state = VerificationState.DERIVED

    def compare(self, ctx: VerificationContext) -> None:
        """DERIVED -> COMPARED: compute the signature and compare in constant time."""
        ctx.expected_signature = compute_signature(ctx.signing_key, ctx.string_to_sign)
        ctx.signing_key.wipe()
        check_signature(ctx.expected_signature, ctx.parsed.signature)
        ctx.state = VerificationState.COMPARED

    # -- Helpers ---------------------------------------------------------------

    def _failure(self, ctx: VerificationContext, exc: SigV4Error) -> VerificationOutcome:
        access_key = ctx.parsed.credential.access_key_id if ctx.parsed else "-"
        outcome = "rejected" if exc.is_rejection else "error"
        extra = {"access_key": access_key, "outcome": outcome, "code": exc.code}
        if exc.is_rejection:
            logger.info(
                "SigV4 rejected at %s (%s) for %s: %s",
                ctx.state.value,
                exc.code,
                access_key,
                exc.message,
                extra=extra,
            )
            return Rejected(reason=exc, stage=ctx.state)
        logger.warning(
            "SigV4 verification error at %s (%s) for %s: %s",
            ctx.state.value,
            exc.code,
            access_key,
            exc.message,
            extra=extra,
        )
        return Errored(cause=exc, stage=ctx.state)


def _check_resolved(result: Any) -> SigningKeyMaterial:
    """Validate a resolver's return value and take ownership of the key bytes.

    Raises:
        InternalError: If the value is not (SigningKeyKind, non-empty bytes).
    """
    if not isinstance(result, tuple) or len(result) != 2:
        raise InternalError(
            f"Signing key resolver returned {type(result).__name__}, expected (kind, key)."
        )
    kind, key = result
    if not isinstance(kind, SigningKeyKind):
        raise InternalError(
            f"Signing key resolver returned kind of type {type(kind).__name__}."
        )
    if not isinstance(key, (bytes, bytearray)) or not key:
        raise InternalError("Signing key resolver returned an empty or non-bytes key.")
    return SigningKeyMaterial(kind, key)


async def verify(
    request: SigV4Request,
    resolver: Any,
    region: str,
    service: str,
    clock_skew: timedelta | None = DEFAULT_CLOCK_SKEW,
    **options: Any,
) -> VerificationOutcome:
    """Verify a request with a one-off verifier.

    Args:
        request: The request to verify.
        resolver: A SigningKeyResolver or bare resolve callable.
        region: Expected region, or ANY_REGION.
        service: Expected service.
        clock_skew: Allowed clock skew; None disables the check.
        **options: Any other VerifierSettings field.

    Returns:
        The verification outcome.
    """
    settings = VerifierSettings(
        service=service, region=region, allowed_clock_skew=clock_skew, **options
    )
    return await SigV4Verifier(settings).verify(request, resolver)
