"""String-to-sign assembly, signature computation, and comparison."""

import hashlib
import hmac

from sigv4auth.errors import SignatureDoesNotMatch
from sigv4auth.models import (
    ALGORITHM,
    CanonicalRequest,
    Credential,
    SigningKeyKind,
    SigningKeyMaterial,
    StringToSign,
    wire_encode,
)


def build_string_to_sign(
    timestamp: str, credential: Credential, canonical_request: CanonicalRequest
) -> StringToSign:
    """Build the string to sign.

    Args:
        timestamp: Request timestamp (YYYYMMDDTHHMMSSZ).
        credential: The request's credential; supplies the scope.
        canonical_request: The canonicalized request.

    Returns:
        The StringToSign.
    """
    return StringToSign(
        algorithm=ALGORITHM,
        timestamp=timestamp,
        scope=credential.scope,
        canonical_request_hash=canonical_request.digest(),
    )


def compute_signature(signing_key: SigningKeyMaterial, string_to_sign: StringToSign) -> str:
    """Compute the hex HMAC-SHA256 signature.

    Args:
        signing_key: A fully derived key (kind SIGNING).
        string_to_sign: The assembled string to sign.

    Returns:
        64-character lowercase hex string.
    """
    if signing_key.kind is not SigningKeyKind.SIGNING:
        raise ValueError(f"Expected a SIGNING key, got {signing_key.kind.name}")
    return hmac.new(
        signing_key.buffer, string_to_sign.to_string().encode("utf-8"), hashlib.sha256
    ).hexdigest()


def check_signature(expected: str, provided: str) -> None:
    """Compare signatures in constant time.

    Raises:
        SignatureDoesNotMatch: If the signatures differ.
    """
    if not hmac.compare_digest(expected.encode("ascii"), wire_encode(provided)):
        raise SignatureDoesNotMatch()
