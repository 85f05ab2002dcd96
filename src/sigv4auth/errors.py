"""SigV4 verification error definitions for sigv4auth."""

# Generic public renderings. Every rejection looks the same on the wire so a
# caller cannot tell which check failed.
PUBLIC_REJECTION_CODE = "AccessDenied"
PUBLIC_REJECTION_MESSAGE = "Access Denied"
PUBLIC_ERROR_CODE = "InternalError"
PUBLIC_ERROR_MESSAGE = "We encountered an internal error. Please try again."


class SigV4Error(Exception):
    """A verification failure with an internal code, message, and HTTP status.

    The ``code`` and ``message`` are meant for logs only. Responses should use
    ``public_code`` and ``public_message``.

    Attributes:
        code: The specific error code (e.g. "MalformedSignature").
        message: Human-readable description of the specific failure.
        http_status: The HTTP status code a pipeline should answer with.
        is_rejection: True for evidence against the signer (Rejected),
            False for failures of the verifier itself (Errored).
    """

    is_rejection: bool = True
    public_code: str = PUBLIC_REJECTION_CODE
    public_message: str = PUBLIC_REJECTION_MESSAGE

    def __init__(self, code: str, message: str, http_status: int = 403) -> None:
        """Initialize the error.

        Args:
            code: Specific error code.
            message: Error description.
            http_status: HTTP status code (default 403).
        """
        super().__init__(message)
        self.code = code
        self.message = message
        self.http_status = http_status


# -- Rejections ----------------------------------------------------------------


class IncompleteSignature(SigV4Error):
    """No authentication data was found on the request."""

    def __init__(
        self,
        message: str = "Request is missing an Authorization header or presigned query parameters.",
    ) -> None:
        super().__init__(code="IncompleteSignature", message=message)


class MalformedSignature(SigV4Error):
    """Authentication data is present but structurally invalid."""

    def __init__(self, message: str = "Authentication data is malformed.") -> None:
        super().__init__(code="MalformedSignature", message=message)


class MissingDateHeader(SigV4Error):
    """The request carries no timestamp to match the credential scope against."""

    def __init__(
        self, message: str = "Request is missing an X-Amz-Date or Date header."
    ) -> None:
        super().__init__(code="MissingDateHeader", message=message)


class SignatureDoesNotMatch(SigV4Error):
    """The request is well-formed but failed a signature or freshness check.

    Attributes:
        reason: Short machine-readable reason ("mismatch", "expired", ...).
    """

    def __init__(
        self,
        message: str = "The request signature we calculated does not match the signature you provided.",
        reason: str = "mismatch",
    ) -> None:
        super().__init__(code="SignatureDoesNotMatch", message=message)
        self.reason = reason


class RequestTimeTooSkewed(SignatureDoesNotMatch):
    """The request timestamp is outside the allowed clock-skew window."""

    def __init__(
        self,
        message: str = "The difference between the request time and the current time is too large.",
    ) -> None:
        super().__init__(message=message, reason="skewed")


class ExpiredPresignedRequest(SignatureDoesNotMatch):
    """The presigned request is past its X-Amz-Expires window."""

    def __init__(self, message: str = "Request has expired.") -> None:
        super().__init__(message=message, reason="expired")


class InvalidCredentialScope(SignatureDoesNotMatch):
    """The credential scope does not match the request or the verifier."""

    def __init__(self, message: str = "Credential scope is not valid for this request.") -> None:
        super().__init__(message=message, reason="scope")


class InvalidCredentials(SigV4Error):
    """The resolver does not know the access key id."""

    def __init__(
        self, message: str = "The access key id you provided does not exist in our records."
    ) -> None:
        super().__init__(code="InvalidCredentials", message=message)


# -- Errors --------------------------------------------------------------------


class KeyLookupError(SigV4Error):
    """The signing key resolver failed (I/O error, timeout, cancellation)."""

    is_rejection = False
    public_code = "ServiceUnavailable"
    public_message = "Please reduce your request rate or try again later."

    def __init__(self, message: str = "Signing key lookup failed.") -> None:
        super().__init__(code="LookupError", message=message, http_status=503)


class InternalError(SigV4Error):
    """An unexpected failure, such as a resolver contract violation."""

    is_rejection = False
    public_code = PUBLIC_ERROR_CODE
    public_message = PUBLIC_ERROR_MESSAGE

    def __init__(self, message: str = "Internal Error") -> None:
        super().__init__(code="InternalError", message=message, http_status=500)
