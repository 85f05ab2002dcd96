"""Canonical request construction for SigV4.

The canonical request is the byte-exact string both the signer and the
verifier hash. Nothing here is negotiated with the client, so every rule must
match what AWS SDKs do.

References:
    - https://docs.aws.amazon.com/IAM/latest/UserGuide/create-signed-request.html
"""

import re
import string

from sigv4auth.errors import MalformedSignature, SignatureDoesNotMatch
from sigv4auth.models import CanonicalRequest, SigV4Request, wire_encode

UNSIGNED_PAYLOAD = "UNSIGNED-PAYLOAD"
STREAMING_PAYLOAD = "STREAMING-AWS4-HMAC-SHA256-PAYLOAD"
EMPTY_SHA256 = "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
CONTENT_SHA256_HEADER = "x-amz-content-sha256"
SIGNATURE_PARAM = "X-Amz-Signature"

# RFC 3986 unreserved characters
_UNRESERVED = frozenset((string.ascii_letters + string.digits + "-._~").encode("ascii"))
_HEX_DIGITS = frozenset(b"0123456789abcdefABCDEF")
_SHA256_RE = re.compile(r"^[0-9a-f]{64}$")
_MULTISLASH_RE = re.compile(r"//+")
_WHITESPACE_RE = re.compile(r"\s+", re.ASCII)


def normalize_uri_component(component: str, plus_is_space: bool = False) -> str:
    """Percent-decode then re-encode a path segment or query token.

    Unreserved characters are left alone, percent-escapes of unreserved
    characters are decoded, all other bytes come out as ``%XX`` with
    upper-case hex.

    Args:
        component: The raw, possibly percent-encoded text.
        plus_is_space: If True, '+' is read as an encoded space (query strings).

    Returns:
        The normalized text.

    Raises:
        MalformedSignature: On a ``%`` not followed by two hex digits.
    """
    raw = wire_encode(component)
    out = []
    i = 0
    while i < len(raw):
        c = raw[i]
        if c in _UNRESERVED:
            out.append(chr(c))
            i += 1
        elif c == 0x25:  # '%'
            escape = raw[i + 1 : i + 3]
            if len(escape) < 2 or not _HEX_DIGITS.issuperset(escape):
                raise MalformedSignature(f"Invalid percent-encoding at position {i}.")
            value = int(escape, 16)
            if value in _UNRESERVED:
                out.append(chr(value))
            else:
                out.append(f"%{value:02X}")
            i += 3
        elif c == 0x2B and plus_is_space:  # '+'
            out.append("%20")
            i += 1
        else:
            out.append(f"%{c:02X}")
            i += 1
    return "".join(out)


def canonicalize_uri_path(path: str, normalize: bool = True) -> str:
    """Build the canonical URI path.

    With ``normalize`` set, runs of slashes collapse, ``.`` segments are
    dropped and ``..`` removes the segment before it. S3-style paths keep
    every segment as-is (``normalize=False``).

    Args:
        path: The raw request path.
        normalize: Whether to apply dot-segment and slash normalization.

    Returns:
        The canonical path, always starting with '/'.

    Raises:
        MalformedSignature: If the path is relative or climbs above the root.
    """
    if path in ("", "/"):
        return "/"
    if not path.startswith("/"):
        raise MalformedSignature("URI path is not absolute.")

    if not normalize:
        return "/".join(normalize_uri_component(seg) for seg in path.split("/"))

    path = _MULTISLASH_RE.sub("/", path)
    segments: list[str] = []
    for raw_segment in path.split("/")[1:]:
        segment = normalize_uri_component(raw_segment)
        if segment == ".":
            continue
        if segment == "..":
            if not segments:
                raise MalformedSignature("URI path attempts to go beyond root.")
            segments.pop()
            continue
        segments.append(segment)

    # A trailing '.' or '..' still names a directory
    if path.endswith(("/.", "/..")):
        segments.append("")
    return "/" + "/".join(segments)


def parse_query_parameters(query_string: str) -> list[tuple[str, str]]:
    """Split a raw query string into normalized (name, value) pairs.

    Order is preserved; empty components are skipped and a name without '='
    gets an empty value.
    """
    params: list[tuple[str, str]] = []
    if not query_string:
        return params
    for pair in query_string.split("&"):
        if not pair:
            continue
        if "=" in pair:
            name, value = pair.split("=", 1)
        else:
            name, value = pair, ""
        params.append(
            (
                normalize_uri_component(name, plus_is_space=True),
                normalize_uri_component(value, plus_is_space=True),
            )
        )
    return params


def canonicalize_query_string(query_string: str, exclude: tuple[str, ...] = ()) -> str:
    """Build the canonical query string.

    Parameters are sorted by name, then value (byte order). Duplicate names
    are kept.

    Args:
        query_string: The raw query string (without leading '?').
        exclude: Parameter names to leave out (e.g. X-Amz-Signature).

    Returns:
        The canonical query string.
    """
    params = [
        (name, value)
        for name, value in parse_query_parameters(query_string)
        if name not in exclude
    ]
    params.sort(key=lambda p: (wire_encode(p[0]), wire_encode(p[1])))
    return "&".join(f"{name}={value}" for name, value in params)


def trim_header_value(value: str) -> str:
    """Strip a header value and collapse internal whitespace runs to one space."""
    return _WHITESPACE_RE.sub(" ", value.strip(string.whitespace))


def canonicalize_headers(request: SigV4Request, signed_headers: list[str]) -> str:
    """Build the canonical headers block for the signed header names.

    Args:
        request: The request carrying the headers.
        signed_headers: Lower-cased, sorted signed header names.

    Returns:
        One ``name:value\\n`` line per signed header.

    Raises:
        MalformedSignature: If a signed header is absent from the request.
    """
    lines = []
    for name in signed_headers:
        values = request.header_values(name)
        if not values:
            raise MalformedSignature(f"Signed header {name!r} is not present in the request.")
        lines.append(f"{name}:{','.join(trim_header_value(v) for v in values)}\n")
    return "".join(lines)


def resolve_payload_hash(
    request: SigV4Request, presigned: bool = False, allow_unsigned: bool = False
) -> str:
    """Work out the payload hash line of the canonical request.

    Presigned requests always use ``UNSIGNED-PAYLOAD``. Header-authenticated
    requests use the ``x-amz-content-sha256`` header when given, checked
    against the body, and otherwise the SHA-256 of the body.

    Raises:
        MalformedSignature: On an unusable x-amz-content-sha256 value.
        SignatureDoesNotMatch: If the claimed digest is not the body's digest.
    """
    if presigned:
        return UNSIGNED_PAYLOAD

    claimed = request.header_values(CONTENT_SHA256_HEADER)
    if not claimed:
        return request.body_sha256
    if len(claimed) > 1:
        raise MalformedSignature("Multiple x-amz-content-sha256 headers present.")

    value = claimed[0].strip()
    if value == UNSIGNED_PAYLOAD:
        if not allow_unsigned:
            raise MalformedSignature("Unsigned payloads are not accepted.")
        return value
    if not _SHA256_RE.match(value):
        raise MalformedSignature(f"Invalid x-amz-content-sha256 value: {value!r}")
    if value != request.body_sha256:
        raise SignatureDoesNotMatch(
            "The x-amz-content-sha256 header does not match the request body.",
            reason="payload",
        )
    return value


def build_canonical_request(
    request: SigV4Request,
    signed_headers: list[str],
    presigned: bool = False,
    allow_unsigned: bool = False,
    normalize_path: bool = True,
) -> CanonicalRequest:
    """Canonicalize a request.

    Args:
        request: The request to canonicalize.
        signed_headers: Lower-cased, sorted signed header names.
        presigned: If True, X-Amz-Signature is dropped from the query and the
            payload is unsigned.
        allow_unsigned: Whether ``UNSIGNED-PAYLOAD`` is acceptable for
            header-authenticated requests.
        normalize_path: Whether to normalize dot segments and double slashes.

    Returns:
        The CanonicalRequest.
    """
    exclude = (SIGNATURE_PARAM,) if presigned else ()
    return CanonicalRequest(
        method=request.method.upper(),
        canonical_uri=canonicalize_uri_path(request.path, normalize=normalize_path),
        canonical_query=canonicalize_query_string(request.query_string, exclude=exclude),
        canonical_headers=canonicalize_headers(request, signed_headers),
        signed_headers=tuple(signed_headers),
        payload_hash=resolve_payload_hash(
            request, presigned=presigned, allow_unsigned=allow_unsigned
        ),
    )
