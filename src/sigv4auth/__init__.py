"""sigv4auth - AWS Signature Version 4 request verification."""

from sigv4auth.errors import (
    IncompleteSignature,
    InternalError,
    InvalidCredentials,
    KeyLookupError,
    MalformedSignature,
    MissingDateHeader,
    SignatureDoesNotMatch,
    SigV4Error,
)
from sigv4auth.models import (
    Authenticated,
    Credential,
    Errored,
    Rejected,
    SigningKeyKind,
    SigV4Request,
    VerificationOutcome,
)
from sigv4auth.resolvers import (
    CachingSigningKeyResolver,
    SigningKeyResolver,
    StaticSigningKeyResolver,
)
from sigv4auth.verifier import ANY_REGION, SigV4Verifier, VerifierSettings, verify

__version__ = "0.1.0"
__all__ = [
    "ANY_REGION",
    "Authenticated",
    "CachingSigningKeyResolver",
    "Credential",
    "Errored",
    "IncompleteSignature",
    "InternalError",
    "InvalidCredentials",
    "KeyLookupError",
    "MalformedSignature",
    "MissingDateHeader",
    "Rejected",
    "SignatureDoesNotMatch",
    "SigningKeyKind",
    "SigningKeyResolver",
    "SigV4Error",
    "SigV4Request",
    "SigV4Verifier",
    "StaticSigningKeyResolver",
    "VerificationOutcome",
    "VerifierSettings",
    "verify",
]
