"""SigV4 signing key derivation.

    kDate    = HMAC("AWS4" + secret, date)
    kRegion  = HMAC(kDate, region)
    kService = HMAC(kRegion, service)
    kSigning = HMAC(kService, "aws4_request")

A resolver may hand back a key from any rung of this ladder; only the
remaining steps are run. Each step's output keys the next step.
"""

import hashlib
import hmac

from sigv4auth.models import SCOPE_TERMINATOR, Credential, SigningKeyKind, SigningKeyMaterial

KEY_PREFIX = "AWS4"


def _hmac_step(key: bytes | bytearray, message: str) -> bytearray:
    return bytearray(hmac.new(key, message.encode("utf-8"), hashlib.sha256).digest())


def _zero(buffer: bytearray) -> None:
    for i in range(len(buffer)):
        buffer[i] = 0


def derive_signing_key(material: SigningKeyMaterial, credential: Credential) -> SigningKeyMaterial:
    """Finish the derivation chain for the credential's date/region/service.

    The input material is left untouched; the caller still owns and wipes it.
    Intermediate keys are zeroed as soon as the next step has consumed them.

    Args:
        material: Key bytes and the kind they are.
        credential: Supplies the date, region, and service scope.

    Returns:
        New SigningKeyMaterial of kind SIGNING.
    """
    messages = [credential.date, credential.region, credential.service, SCOPE_TERMINATOR]
    steps = messages[len(messages) - material.kind.remaining_steps :]

    if material.kind is SigningKeyKind.SECRET:
        current = bytearray(KEY_PREFIX.encode("utf-8")) + material.buffer
    else:
        current = bytearray(material.buffer)

    try:
        for message in steps:
            following = _hmac_step(current, message)
            _zero(current)
            current = following
        return SigningKeyMaterial(SigningKeyKind.SIGNING, current)
    finally:
        _zero(current)


def derive_key(
    secret_key: str,
    date: str,
    region: str,
    service: str,
    kind: SigningKeyKind = SigningKeyKind.SIGNING,
) -> bytes:
    """Derive the key of the given kind straight from a secret access key.

    This is a standalone helper for resolvers that pre-derive keys; the
    verifier itself works on SigningKeyMaterial.

    Args:
        secret_key: The secret access key.
        date: Date string (YYYYMMDD).
        region: Region name.
        service: Service name.
        kind: How far down the chain to go.

    Returns:
        The derived key bytes (the raw secret for SECRET).
    """
    if kind is SigningKeyKind.SECRET:
        return secret_key.encode("utf-8")
    key = (KEY_PREFIX + secret_key).encode("utf-8")
    messages = [date, region, service, SCOPE_TERMINATOR]
    for message in messages[: 4 - kind.remaining_steps]:
        key = hmac.new(key, message.encode("utf-8"), hashlib.sha256).digest()
    return key
