"""Extraction of SigV4 authentication data from a request.

Authentication data comes from exactly one place: the Authorization header,
or (when enabled) the presigned-URL query parameters. Parsing is pure; the
only input besides the request is the current time, used for the presigned
expiry check.
"""

import email.utils
import re
import urllib.parse
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sigv4auth.errors import (
    ExpiredPresignedRequest,
    IncompleteSignature,
    InvalidCredentialScope,
    MalformedSignature,
    MissingDateHeader,
    RequestTimeTooSkewed,
)
from sigv4auth.models import ALGORITHM, SCOPE_TERMINATOR, Credential, SigV4Request

AMZ_DATE_FORMAT = "%Y%m%dT%H%M%SZ"
MAX_PRESIGNED_EXPIRES = 604800  # 7 days in seconds

# Query parameters for presigned requests
ALGORITHM_PARAM = "X-Amz-Algorithm"
CREDENTIAL_PARAM = "X-Amz-Credential"
DATE_PARAM = "X-Amz-Date"
EXPIRES_PARAM = "X-Amz-Expires"
SECURITY_TOKEN_PARAM = "X-Amz-Security-Token"
SIGNATURE_PARAM = "X-Amz-Signature"
SIGNED_HEADERS_PARAM = "X-Amz-SignedHeaders"

PRESIGNED_REQUIRED_PARAMS = (
    ALGORITHM_PARAM,
    CREDENTIAL_PARAM,
    DATE_PARAM,
    SIGNED_HEADERS_PARAM,
    SIGNATURE_PARAM,
)

# Headers
AUTHORIZATION_HEADER = "authorization"
AMZ_DATE_HEADER = "x-amz-date"
DATE_HEADER = "date"
HOST_HEADER = "host"
SECURITY_TOKEN_HEADER = "x-amz-security-token"

_AUTH_FIELDS = ("Credential", "SignedHeaders", "Signature")
_SCOPE_DATE_RE = re.compile(r"^\d{8}$")


@dataclass(frozen=True)
class ParsedAuth:
    """Authentication data pulled out of a request.

    Attributes:
        credential: Access key id and credential scope.
        signed_headers: Lower-cased, sorted signed header names.
        signature: The signature exactly as the client sent it.
        timestamp: The request time (UTC).
        presigned: True when the data came from the query string.
        expires: X-Amz-Expires in seconds, for presigned requests that set it.
        session_token: The security token, if the request carries one.
    """

    credential: Credential
    signed_headers: list[str]
    signature: str
    timestamp: datetime
    presigned: bool = False
    expires: int | None = None
    session_token: str | None = None

    @property
    def amz_date(self) -> str:
        """The timestamp in the form used by the string to sign."""
        return self.timestamp.strftime(AMZ_DATE_FORMAT)


class RequestCredentialParser:
    """Parses SigV4 authentication data out of requests.

    Attributes:
        allow_presigned: Whether query-string authentication is accepted.
        max_presigned_expires: Upper bound on X-Amz-Expires, in seconds.
    """

    def __init__(
        self, allow_presigned: bool = False, max_presigned_expires: int = MAX_PRESIGNED_EXPIRES
    ) -> None:
        self.allow_presigned = allow_presigned
        self.max_presigned_expires = max_presigned_expires

    def parse(self, request: SigV4Request, now: datetime | None = None) -> ParsedAuth:
        """Extract authentication data from the request.

        Args:
            request: The request to inspect.
            now: Current time for the presigned expiry check (default: now).

        Returns:
            The parsed authentication data.

        Raises:
            IncompleteSignature: If the request carries no authentication data.
            MalformedSignature: If the data is present but unusable.
            MissingDateHeader: If a header-signed request has no timestamp.
            ExpiredPresignedRequest: If a presigned request has expired.
        """
        query = urllib.parse.parse_qs(request.query_string, keep_blank_values=True)
        has_header = bool(request.header_values(AUTHORIZATION_HEADER))
        has_presigned = self.allow_presigned and any(
            name in query for name in (ALGORITHM_PARAM, CREDENTIAL_PARAM, SIGNATURE_PARAM)
        )

        if has_header and has_presigned:
            raise MalformedSignature(
                "Both an Authorization header and presigned query parameters are present."
            )
        if has_presigned:
            return self._parse_presigned(request, query, now or datetime.now(timezone.utc))
        if has_header:
            return self._parse_header(request)
        raise IncompleteSignature()

    # -- Header-based auth -----------------------------------------------------

    def _parse_header(self, request: SigV4Request) -> ParsedAuth:
        values = request.header_values(AUTHORIZATION_HEADER)
        if len(values) > 1:
            raise MalformedSignature("Multiple Authorization headers present.")
        fields = parse_authorization_header(values[0])

        credential = parse_credential(fields["Credential"])
        signed_headers = parse_signed_headers(fields["SignedHeaders"])
        signature = _check_signature_format(fields["Signature"])

        date_header, timestamp = _header_timestamp(request)
        if date_header not in signed_headers:
            raise MalformedSignature(f"The {date_header} header must be signed.")
        _check_scope_date(credential, timestamp)

        return ParsedAuth(
            credential=credential,
            signed_headers=signed_headers,
            signature=signature,
            timestamp=timestamp,
            session_token=_single_header(request, SECURITY_TOKEN_HEADER),
        )

    # -- Presigned auth --------------------------------------------------------

    def _parse_presigned(
        self, request: SigV4Request, query: dict[str, list[str]], now: datetime
    ) -> ParsedAuth:
        params: dict[str, str] = {}
        for name in PRESIGNED_REQUIRED_PARAMS + (EXPIRES_PARAM, SECURITY_TOKEN_PARAM):
            values = query.get(name)
            if values is None:
                continue
            if len(values) > 1:
                raise MalformedSignature(f"Multiple {name} query parameters present.")
            params[name] = values[0]

        missing = [name for name in PRESIGNED_REQUIRED_PARAMS if not params.get(name)]
        if missing:
            raise MalformedSignature(
                f"Presigned request is missing query parameters: {', '.join(missing)}."
            )

        if params[ALGORITHM_PARAM] != ALGORITHM:
            raise MalformedSignature(f"Unsupported algorithm: {params[ALGORITHM_PARAM]}")

        credential = parse_credential(params[CREDENTIAL_PARAM])
        signed_headers = parse_signed_headers(params[SIGNED_HEADERS_PARAM])
        signature = _check_signature_format(params[SIGNATURE_PARAM])
        timestamp = parse_amz_date(params[DATE_PARAM])
        _check_scope_date(credential, timestamp)

        expires = None
        if EXPIRES_PARAM in params:
            expires = self._parse_expires(params[EXPIRES_PARAM])
            if now > timestamp + timedelta(seconds=expires):
                raise ExpiredPresignedRequest()

        return ParsedAuth(
            credential=credential,
            signed_headers=signed_headers,
            signature=signature,
            timestamp=timestamp,
            presigned=True,
            expires=expires,
            session_token=params.get(SECURITY_TOKEN_PARAM) or None,
        )

    def _parse_expires(self, value: str) -> int:
        try:
            expires = int(value)
        except ValueError:
            raise MalformedSignature(f"Invalid X-Amz-Expires value: {value!r}")
        if expires < 1 or expires > self.max_presigned_expires:
            raise MalformedSignature(
                f"X-Amz-Expires must be between 1 and {self.max_presigned_expires} seconds."
            )
        return expires


# ---------------------------------------------------------------------------
# Module-level parsing helpers
# ---------------------------------------------------------------------------


def parse_authorization_header(header: str) -> dict[str, str]:
    """Split an Authorization header into its Credential/SignedHeaders/Signature fields.

    Args:
        header: The raw Authorization header value.

    Returns:
        A dict with keys Credential, SignedHeaders, Signature.

    Raises:
        MalformedSignature: On a different algorithm or a malformed field list.
    """
    algorithm, _, rest = header.strip().partition(" ")
    if algorithm != ALGORITHM:
        raise MalformedSignature(f"Unsupported algorithm: {algorithm}")

    fields: dict[str, str] = {}
    for part in rest.split(","):
        part = part.strip()
        key, sep, value = part.partition("=")
        if not sep:
            raise MalformedSignature("Invalid Authorization header: missing '='.")
        if key in fields:
            raise MalformedSignature(f"Invalid Authorization header: duplicate {key}.")
        fields[key] = value.strip()

    if set(fields) != set(_AUTH_FIELDS):
        raise MalformedSignature(
            "Authorization header must have exactly Credential, SignedHeaders and Signature."
        )
    return fields


def parse_credential(value: str) -> Credential:
    """Parse ``accesskey/YYYYMMDD/region/service/aws4_request``.

    Raises:
        MalformedSignature: If any part is missing or out of shape.
    """
    parts = value.split("/")
    if len(parts) != 5 or not all(parts):
        raise MalformedSignature(f"Invalid Credential format: {value!r}")
    access_key_id, date, region, service, terminator = parts
    if not _SCOPE_DATE_RE.match(date):
        raise MalformedSignature(f"Invalid credential scope date: {date!r}")
    if terminator != SCOPE_TERMINATOR:
        raise MalformedSignature(f"Invalid credential scope terminator: {terminator!r}")
    return Credential(access_key_id=access_key_id, date=date, region=region, service=service)


def parse_signed_headers(value: str) -> list[str]:
    """Parse the semicolon-separated SignedHeaders list.

    The list must already be canonical (lower-cased, sorted, no duplicates)
    and must include ``host``.

    Raises:
        MalformedSignature: If the list is not canonical or lacks ``host``.
    """
    names = value.split(";")
    if not all(names):
        raise MalformedSignature("SignedHeaders contains an empty header name.")
    if names != sorted(set(n.lower() for n in names)):
        raise MalformedSignature(f"SignedHeaders is not canonicalized: {value!r}")
    if HOST_HEADER not in names:
        raise MalformedSignature("The host header must be signed.")
    return names


def parse_amz_date(value: str) -> datetime:
    """Parse an ISO 8601 basic timestamp (YYYYMMDDTHHMMSSZ) as UTC.

    Raises:
        MalformedSignature: If the value is not in that format.
    """
    try:
        return datetime.strptime(value, AMZ_DATE_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        raise MalformedSignature(f"Invalid X-Amz-Date format: {value!r}")


def check_clock_skew(
    parsed: ParsedAuth, now: datetime, window: timedelta | None
) -> None:
    """Reject timestamps outside the allowed window around ``now``.

    Presigned requests that carry X-Amz-Expires are only held to the window
    for timestamps in the future; their age is governed by the expiry.

    Raises:
        RequestTimeTooSkewed: If the timestamp is out of range.
    """
    if window is None:
        return
    if parsed.timestamp > now + window:
        raise RequestTimeTooSkewed()
    if parsed.expires is None and parsed.timestamp < now - window:
        raise RequestTimeTooSkewed()


def _header_timestamp(request: SigV4Request) -> tuple[str, datetime]:
    amz_date = _single_header(request, AMZ_DATE_HEADER)
    if amz_date is not None:
        return AMZ_DATE_HEADER, parse_amz_date(amz_date.strip())

    date = _single_header(request, DATE_HEADER)
    if date is None:
        raise MissingDateHeader()
    try:
        parsed = email.utils.parsedate_to_datetime(date)
    except (TypeError, ValueError):
        parsed = None
    if parsed is None or parsed.tzinfo is None:
        raise MalformedSignature(f"Invalid Date header: {date!r}")
    return DATE_HEADER, parsed.astimezone(timezone.utc)


def _single_header(request: SigV4Request, name: str) -> str | None:
    values = request.header_values(name)
    if not values:
        return None
    if len(values) > 1:
        raise MalformedSignature(f"Multiple {name} headers present.")
    return values[0]


def _check_signature_format(signature: str) -> str:
    if not signature:
        raise MalformedSignature("Signature is empty.")
    return signature


def _check_scope_date(credential: Credential, timestamp: datetime) -> None:
    request_date = timestamp.strftime("%Y%m%d")
    if credential.date != request_date:
        raise InvalidCredentialScope(
            f"Date in Credential scope ({credential.date}) does not match "
            f"the request date ({request_date})."
        )
