"""Data model types for sigv4auth.

These types describe the request being verified, the values derived from it
(credential, canonical request, string to sign), the transient signing key
material, and the outcome handed back to the surrounding pipeline.
"""

from __future__ import annotations

import hashlib
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from starlette.requests import Request

    from sigv4auth.errors import SigV4Error

ALGORITHM = "AWS4-HMAC-SHA256"
SCOPE_TERMINATOR = "aws4_request"

# Wire bytes <-> str; undecodable bytes round-trip unchanged.
WIRE_ENCODING = ("utf-8", "surrogateescape")


def wire_decode(data: bytes) -> str:
    return data.decode(*WIRE_ENCODING)


def wire_encode(text: str) -> bytes:
    return text.encode(*WIRE_ENCODING)


class SigningKeyKind(Enum):
    """What a signing key resolver hands back.

    Each kind sits one HMAC step further down the derivation chain than the
    one before it.
    """

    SECRET = "secret"
    DATE = "date"
    REGION = "region"
    SERVICE = "service"
    SIGNING = "signing"

    @property
    def remaining_steps(self) -> int:
        """Number of HMAC steps still needed to reach the signing key."""
        return _REMAINING_STEPS[self]


_REMAINING_STEPS = {
    SigningKeyKind.SECRET: 4,
    SigningKeyKind.DATE: 3,
    SigningKeyKind.REGION: 2,
    SigningKeyKind.SERVICE: 1,
    SigningKeyKind.SIGNING: 0,
}


class VerificationState(Enum):
    """Steps of the verification pipeline, in execution order."""

    START = "start"
    PARSED = "parsed"
    CANONICALIZED = "canonicalized"
    KEY_RESOLVED = "key_resolved"
    DERIVED = "derived"
    COMPARED = "compared"
    AUTHENTICATED = "authenticated"
    REJECTED = "rejected"
    ERROR = "error"


@dataclass(frozen=True)
class Credential:
    """The credential named by a signed request.

    Attributes:
        access_key_id: The access key id of the signer.
        date: Scope date (YYYYMMDD).
        region: Scope region.
        service: Scope service name.
    """

    access_key_id: str
    date: str
    region: str
    service: str

    @property
    def scope(self) -> str:
        """The credential scope string (date/region/service/aws4_request)."""
        return f"{self.date}/{self.region}/{self.service}/{SCOPE_TERMINATOR}"


@dataclass
class SigV4Request:
    """An HTTP request as seen by the verifier.

    Header names are stored lower-cased; each maps to its values in the order
    they appeared on the wire.

    Attributes:
        method: HTTP method (uppercase).
        path: The raw URI path, still percent-encoded.
        query_string: The raw query string without the leading '?'.
        headers: Lower-cased header name -> list of values.
        body: The request body.
    """

    method: str
    path: str = "/"
    query_string: str = ""
    headers: dict[str, list[str]] = field(default_factory=dict)
    body: bytes = b""

    @classmethod
    def from_pairs(
        cls,
        method: str,
        path: str = "/",
        query_string: str = "",
        headers: Iterable[tuple[str, str]] | dict[str, str] = (),
        body: bytes = b"",
    ) -> SigV4Request:
        """Build a request from header (name, value) pairs or a plain dict."""
        if isinstance(headers, dict):
            headers = headers.items()
        multimap: dict[str, list[str]] = {}
        for name, value in headers:
            multimap.setdefault(name.lower(), []).append(value)
        return cls(
            method=method.upper(),
            path=path,
            query_string=query_string,
            headers=multimap,
            body=body,
        )

    @classmethod
    async def from_starlette(cls, request: Request) -> SigV4Request:
        """Build a request from a Starlette/FastAPI request, reading the body.

        The path is taken from the ASGI ``raw_path`` so the client's original
        percent-encoding survives; ``scope["path"]`` is already decoded. Path,
        query and header bytes are decoded with :data:`WIRE_ENCODING` so they
        re-encode to exactly the bytes the client signed.
        """
        body = await request.body()
        raw_path = request.scope.get("raw_path")
        if raw_path:
            path = wire_decode(raw_path.split(b"?", 1)[0])
        else:
            path = request.url.path
        return cls.from_pairs(
            method=request.method,
            path=path,
            query_string=wire_decode(request.scope.get("query_string") or b""),
            headers=[
                (wire_decode(name), wire_decode(value)) for name, value in request.headers.raw
            ],
            body=body,
        )

    def header_values(self, name: str) -> list[str]:
        """Return all values of a header (case-insensitive), or an empty list."""
        return self.headers.get(name.lower(), [])

    @property
    def body_sha256(self) -> str:
        """Hex SHA-256 digest of the body."""
        return hashlib.sha256(self.body).hexdigest()


@dataclass(frozen=True)
class CanonicalRequest:
    """The canonical form of a request, the input to the string to sign.

    Attributes:
        method: HTTP method.
        canonical_uri: Normalized, percent-encoded URI path.
        canonical_query: Sorted, encoded query string.
        canonical_headers: ``name:value\\n`` lines for every signed header.
        signed_headers: Sorted, lower-cased signed header names.
        payload_hash: Hex SHA-256 of the body or a sentinel value.
    """

    method: str
    canonical_uri: str
    canonical_query: str
    canonical_headers: str
    signed_headers: tuple[str, ...]
    payload_hash: str

    def to_string(self) -> str:
        return "\n".join(
            [
                self.method,
                self.canonical_uri,
                self.canonical_query,
                self.canonical_headers,
                ";".join(self.signed_headers),
                self.payload_hash,
            ]
        )

    def digest(self) -> str:
        """Hex SHA-256 of the canonical request string."""
        return hashlib.sha256(wire_encode(self.to_string())).hexdigest()


@dataclass(frozen=True)
class StringToSign:
    """The string that is actually HMAC'd with the signing key."""

    algorithm: str
    timestamp: str
    scope: str
    canonical_request_hash: str

    def to_string(self) -> str:
        return "\n".join(
            [self.algorithm, self.timestamp, self.scope, self.canonical_request_hash]
        )


class SigningKeyMaterial:
    """Key bytes owned by a single verification call.

    Use as a context manager; the buffer is zeroed on exit no matter how the
    block is left.

    Attributes:
        kind: How far down the derivation chain the bytes already are.
    """

    __slots__ = ("kind", "_buffer")

    def __init__(self, kind: SigningKeyKind, key: bytes | bytearray) -> None:
        self.kind = kind
        self._buffer = bytearray(key)

    @property
    def buffer(self) -> bytearray:
        return self._buffer

    def wipe(self) -> None:
        """Overwrite the key bytes with zeros."""
        for i in range(len(self._buffer)):
            self._buffer[i] = 0

    @property
    def wiped(self) -> bool:
        return not any(self._buffer)

    def __enter__(self) -> SigningKeyMaterial:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.wipe()

    def __repr__(self) -> str:
        return f"SigningKeyMaterial(kind={self.kind.name}, length={len(self._buffer)})"


# -- Verification outcomes -----------------------------------------------------


@dataclass(frozen=True)
class Authenticated:
    """The request was signed by the holder of the named access key."""

    access_key_id: str
    session_token: str | None = None

    authenticated = True


@dataclass(frozen=True)
class Rejected:
    """The request failed verification.

    Attributes:
        reason: The specific rejection. Never expose it to the client.
        stage: The pipeline state in which the failure happened.
    """

    reason: SigV4Error
    stage: VerificationState = VerificationState.START

    authenticated = False


@dataclass(frozen=True)
class Errored:
    """The verifier could not reach a decision (lookup failure, bug)."""

    cause: SigV4Error
    stage: VerificationState = VerificationState.START

    authenticated = False


VerificationOutcome = Authenticated | Rejected | Errored
