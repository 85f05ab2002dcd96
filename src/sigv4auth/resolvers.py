"""Signing key resolver protocol and reference implementations."""

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Protocol

from sigv4auth.errors import InvalidCredentials
from sigv4auth.keys import derive_key
from sigv4auth.models import SigningKeyKind

logger = logging.getLogger(__name__)

ResolvedKey = tuple[SigningKeyKind, bytes | bytearray]


class SigningKeyResolver(Protocol):
    """Protocol for looking up signing key material by access key id.

    Implementations may be backed by anything (a database, a KMS, a file).
    ``resolve`` may be a plain function or a coroutine function.

    Implementations signal an unknown access key by returning None or by
    raising InvalidCredentials. Any other exception is treated as a lookup
    failure, not as evidence against the caller.
    """

    def resolve(
        self,
        kind_hint: SigningKeyKind,
        access_key_id: str,
        session_token: str | None = None,
        request_date: str | None = None,
        region: str | None = None,
        service: str | None = None,
    ) -> ResolvedKey | None | Awaitable[ResolvedKey | None]:
        """Return (kind, key bytes) for the access key id.

        Args:
            kind_hint: The kind of key the verifier would prefer.
            access_key_id: The access key id from the request.
            session_token: The request's security token, if any.
            request_date: Scope date (YYYYMMDD).
            region: Scope region.
            service: Scope service.

        Returns:
            The key kind and bytes, or None if the access key is unknown.
        """
        ...


@dataclass
class StaticCredential:
    """A secret held in memory by StaticSigningKeyResolver.

    Attributes:
        secret_key: The secret access key.
        session_token: If set, requests must present this exact token.
    """

    secret_key: str
    session_token: str | None = None


class StaticSigningKeyResolver:
    """Resolves keys from an in-memory access key -> secret mapping.

    Honors the kind hint by pre-deriving the requested rung of the chain, so
    the raw secret only leaves this object when SECRET is asked for. Each
    call returns a new bytearray, so the receiver can zero it when done.
    """

    def __init__(self, credentials: dict[str, str | StaticCredential] | None = None) -> None:
        self._credentials: dict[str, StaticCredential] = {}
        for access_key, secret in (credentials or {}).items():
            self.add(access_key, secret)

    def add(self, access_key_id: str, secret: str | StaticCredential) -> None:
        if isinstance(secret, str):
            secret = StaticCredential(secret_key=secret)
        self._credentials[access_key_id] = secret

    def __len__(self) -> int:
        return len(self._credentials)

    async def resolve(
        self,
        kind_hint: SigningKeyKind,
        access_key_id: str,
        session_token: str | None = None,
        request_date: str | None = None,
        region: str | None = None,
        service: str | None = None,
    ) -> ResolvedKey | None:
        cred = self._credentials.get(access_key_id)
        if cred is None:
            return None
        if cred.session_token is not None and cred.session_token != session_token:
            raise InvalidCredentials("The security token included in the request is invalid.")

        if kind_hint is SigningKeyKind.SECRET or None in (request_date, region, service):
            return SigningKeyKind.SECRET, bytearray(cred.secret_key.encode("utf-8"))
        key = derive_key(cred.secret_key, request_date, region, service, kind_hint)
        return kind_hint, bytearray(key)


class CachingSigningKeyResolver:
    """Wraps another resolver with a bounded cache of resolved keys.

    Entries are keyed by (kind, access key, session token, date, region,
    service). Unknown keys and failures are not cached. When the cache grows
    past ``max_entries`` it is cleared. Callers get their own copy of the
    cached bytes.
    """

    def __init__(self, inner: Any, max_entries: int = 100) -> None:
        self.inner = inner
        self.max_entries = max_entries
        self._cache: dict[tuple, ResolvedKey] = {}

    async def resolve(
        self,
        kind_hint: SigningKeyKind,
        access_key_id: str,
        session_token: str | None = None,
        request_date: str | None = None,
        region: str | None = None,
        service: str | None = None,
    ) -> ResolvedKey | None:
        cache_key = (kind_hint, access_key_id, session_token, request_date, region, service)
        cached = self._cache.get(cache_key)
        if cached is not None:
            return _fresh_copy(cached)

        result = self.inner.resolve(
            kind_hint, access_key_id, session_token, request_date, region, service
        )
        if inspect.isawaitable(result):
            result = await result
        if result is None:
            return None

        if len(self._cache) >= self.max_entries:
            logger.debug("Signing key cache full (%d entries), clearing", len(self._cache))
            self.clear()
        self._cache[cache_key] = _fresh_copy(result)
        return result

    def clear(self) -> None:
        """Drop every cached key, zeroing the cached bytes first."""
        for entry in self._cache.values():
            key = entry[1] if isinstance(entry, tuple) and len(entry) == 2 else None
            if isinstance(key, bytearray):
                key[:] = bytes(len(key))
        self._cache.clear()


def _fresh_copy(result: Any) -> Any:
    """Copy resolved key bytes into a new bytearray the receiver may zero."""
    if isinstance(result, tuple) and len(result) == 2:
        kind, key = result
        if isinstance(key, (bytes, bytearray)):
            return kind, bytearray(key)
    return result
