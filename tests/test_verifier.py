"""Tests for the SigV4 verification pipeline."""

import asyncio
import hashlib
from datetime import datetime, timedelta, timezone

import pytest

import sigv4auth.verifier as verifier_module
from sigv4_signing import (
    ACCESS_KEY,
    SESSION_TOKEN,
    TOKEN_ACCESS_KEY,
    TOKEN_SECRET_KEY,
    presign_query,
    sign_request,
)
from sigv4auth.errors import (
    InternalError,
    InvalidCredentials,
    InvalidCredentialScope,
    KeyLookupError,
    MalformedSignature,
    RequestTimeTooSkewed,
    SignatureDoesNotMatch,
)
from sigv4auth.keys import derive_key
from sigv4auth.models import (
    Authenticated,
    Errored,
    Rejected,
    SigningKeyKind,
    SigV4Request,
    VerificationState,
)
from sigv4auth.resolvers import StaticSigningKeyResolver
from sigv4auth.verifier import ANY_REGION, SigV4Verifier, VerifierSettings, verify

# AWS SigV4 test suite: get-vanilla
VANILLA_SECRET = "wJalrXUtnFEMI/K7MDENG+bPxRfiCYEXAMPLEKEY"
VANILLA_TIME = datetime(2015, 8, 30, 12, 36, 0, tzinfo=timezone.utc)
VANILLA_SIGNATURE = "5fa00fa31553b73ebf1942676e86291e8372ff2a2260956d9b8aae1d763fbf31"
VANILLA_AUTH = (
    "AWS4-HMAC-SHA256 Credential=AKIDEXAMPLE/20150830/us-east-1/service/aws4_request, "
    f"SignedHeaders=host;x-amz-date, Signature={VANILLA_SIGNATURE}"
)


def _vanilla_request(
    method: str = "GET",
    path: str = "/",
    query_string: str = "",
    host: str = "example.amazonaws.com",
    amz_date: str = "20150830T123600Z",
    authorization: str = VANILLA_AUTH,
    body: bytes = b"",
    reverse_headers: bool = False,
) -> SigV4Request:
    headers = [("Host", host), ("X-Amz-Date", amz_date), ("Authorization", authorization)]
    if reverse_headers:
        headers.reverse()
    return SigV4Request.from_pairs(method, path, query_string, headers, body)


def _vanilla_settings(**overrides) -> VerifierSettings:
    fields = {"service": "service", "region": "us-east-1", "allowed_clock_skew": None}
    fields.update(overrides)
    return VerifierSettings(**fields)


class CountingResolver:
    """Wraps a StaticSigningKeyResolver and records each call."""

    def __init__(self, credentials: dict[str, str]) -> None:
        self.inner = StaticSigningKeyResolver(credentials)
        self.calls: list[tuple] = []

    async def resolve(self, kind_hint, access_key_id, *args):
        self.calls.append((kind_hint, access_key_id) + args)
        return await self.inner.resolve(kind_hint, access_key_id, *args)


@pytest.fixture
def vanilla_resolver() -> CountingResolver:
    return CountingResolver({"AKIDEXAMPLE": VANILLA_SECRET})


@pytest.fixture
def verifier() -> SigV4Verifier:
    return SigV4Verifier(_vanilla_settings())


# ---- Known vector ----------------------------------------------------------


class TestKnownVector:
    """The get-vanilla request from the AWS SigV4 test suite."""

    async def test_authenticates(self, verifier, vanilla_resolver):
        outcome = await verifier.verify(_vanilla_request(), vanilla_resolver)
        assert outcome == Authenticated(access_key_id="AKIDEXAMPLE")
        assert outcome.authenticated is True

    async def test_authenticates_at_request_time_with_default_skew(self, vanilla_resolver):
        verifier = SigV4Verifier(VerifierSettings(service="service", region="us-east-1"))
        outcome = await verifier.verify(_vanilla_request(), vanilla_resolver, now=VANILLA_TIME)
        assert isinstance(outcome, Authenticated)

    async def test_other_path_rejected(self, verifier, vanilla_resolver):
        outcome = await verifier.verify(_vanilla_request(path="/x"), vanilla_resolver)
        assert isinstance(outcome, Rejected)
        assert type(outcome.reason) is SignatureDoesNotMatch
        assert outcome.stage is VerificationState.DERIVED
        assert outcome.authenticated is False

    async def test_header_order_independent(self, verifier, vanilla_resolver):
        outcome = await verifier.verify(_vanilla_request(reverse_headers=True), vanilla_resolver)
        assert isinstance(outcome, Authenticated)

    @pytest.mark.parametrize(
        "overrides",
        [
            {"method": "POST"},
            {"host": "example.amazonaws.org"},
            {"amz_date": "20150830T123601Z"},
            {"query_string": "a=b"},
            {"body": b"x"},
            {"authorization": VANILLA_AUTH[:-1] + "e"},
        ],
    )
    async def test_single_change_rejected(self, verifier, vanilla_resolver, overrides):
        """Changing any signed component invalidates the signature."""
        outcome = await verifier.verify(_vanilla_request(**overrides), vanilla_resolver)
        assert isinstance(outcome, Rejected)
        assert isinstance(outcome.reason, SignatureDoesNotMatch)

    @pytest.mark.parametrize("position", range(len(VANILLA_SIGNATURE)))
    async def test_any_flipped_signature_byte_is_mismatch(
        self, verifier, vanilla_resolver, position
    ):
        flipped = bytearray(VANILLA_SIGNATURE.encode("ascii"))
        flipped[position] ^= 0x01
        authorization = VANILLA_AUTH.replace(VANILLA_SIGNATURE, flipped.decode("ascii"))
        outcome = await verifier.verify(
            _vanilla_request(authorization=authorization), vanilla_resolver
        )
        assert isinstance(outcome, Rejected)
        assert type(outcome.reason) is SignatureDoesNotMatch

    @pytest.mark.parametrize(
        "signature", [VANILLA_SIGNATURE[:-1], VANILLA_SIGNATURE + "0", VANILLA_SIGNATURE.upper()]
    )
    async def test_resized_or_recased_signature_is_mismatch(
        self, verifier, vanilla_resolver, signature
    ):
        authorization = VANILLA_AUTH.replace(VANILLA_SIGNATURE, signature)
        outcome = await verifier.verify(
            _vanilla_request(authorization=authorization), vanilla_resolver
        )
        assert type(outcome.reason) is SignatureDoesNotMatch

    async def test_module_level_verify(self, vanilla_resolver):
        outcome = await verify(
            _vanilla_request(), vanilla_resolver, "us-east-1", "service", clock_skew=None
        )
        assert isinstance(outcome, Authenticated)


# ---- Scope and clock checks ------------------------------------------------


class TestScopeAndClock:
    """Cheap checks that run before the resolver is called."""

    async def test_clock_skew_rejected_before_lookup(self, vanilla_resolver):
        verifier = SigV4Verifier(VerifierSettings(service="service", region="us-east-1"))
        now = VANILLA_TIME + timedelta(minutes=10)
        outcome = await verifier.verify(_vanilla_request(), vanilla_resolver, now=now)
        assert isinstance(outcome, Rejected)
        assert isinstance(outcome.reason, RequestTimeTooSkewed)
        assert outcome.reason.reason == "skewed"
        assert outcome.stage is VerificationState.START
        assert vanilla_resolver.calls == []

    async def test_region_mismatch(self, vanilla_resolver):
        verifier = SigV4Verifier(_vanilla_settings(region="eu-west-1"))
        outcome = await verifier.verify(_vanilla_request(), vanilla_resolver)
        assert isinstance(outcome.reason, InvalidCredentialScope)
        assert vanilla_resolver.calls == []

    async def test_any_region(self, vanilla_resolver):
        verifier = SigV4Verifier(_vanilla_settings(region=ANY_REGION))
        outcome = await verifier.verify(_vanilla_request(), vanilla_resolver)
        assert isinstance(outcome, Authenticated)

    async def test_service_mismatch(self, vanilla_resolver):
        verifier = SigV4Verifier(_vanilla_settings(service="s3"))
        outcome = await verifier.verify(_vanilla_request(), vanilla_resolver)
        assert isinstance(outcome.reason, InvalidCredentialScope)

    async def test_malformed_never_reaches_resolver(self, verifier, vanilla_resolver):
        outcome = await verifier.verify(
            _vanilla_request(authorization="AWS4-HMAC-SHA256 garbage"), vanilla_resolver
        )
        assert isinstance(outcome.reason, MalformedSignature)
        assert outcome.stage is VerificationState.START
        assert vanilla_resolver.calls == []

    async def test_resolver_receives_scope(self, verifier, vanilla_resolver):
        await verifier.verify(_vanilla_request(), vanilla_resolver)
        assert vanilla_resolver.calls == [
            (SigningKeyKind.SIGNING, "AKIDEXAMPLE", None, "20150830", "us-east-1", "service")
        ]


# ---- Resolver behavior -----------------------------------------------------


class TestResolver:
    """How resolver results and failures map to outcomes."""

    async def test_unknown_key_looks_like_mismatch(self, verifier):
        outcome = await verifier.verify(_vanilla_request(), StaticSigningKeyResolver())
        assert isinstance(outcome, Rejected)
        assert isinstance(outcome.reason, InvalidCredentials)
        assert outcome.reason.public_code == SignatureDoesNotMatch().public_code
        assert outcome.reason.public_message == SignatureDoesNotMatch().public_message
        assert outcome.reason.http_status == 403

    async def test_resolver_raising_invalid_credentials(self, verifier):
        async def resolve(*args):
            raise InvalidCredentials()

        outcome = await verifier.verify(_vanilla_request(), resolve)
        assert isinstance(outcome.reason, InvalidCredentials)

    @pytest.mark.parametrize("kind", list(SigningKeyKind))
    async def test_every_key_kind(self, vanilla_resolver, kind):
        verifier = SigV4Verifier(_vanilla_settings(signing_key_kind=kind))
        outcome = await verifier.verify(_vanilla_request(), vanilla_resolver)
        assert isinstance(outcome, Authenticated)
        assert vanilla_resolver.calls[0][0] is kind

    async def test_sync_resolver(self, verifier):
        def resolve(kind_hint, access_key_id, *args):
            return SigningKeyKind.SECRET, VANILLA_SECRET.encode()

        outcome = await verifier.verify(_vanilla_request(), resolve)
        assert isinstance(outcome, Authenticated)

    async def test_prederived_key_ignores_hint(self, verifier):
        """A resolver may hand back any kind, not just the one hinted."""

        async def resolve(kind_hint, access_key_id, session_token, date, region, service):
            return SigningKeyKind.REGION, derive_key(
                VANILLA_SECRET, date, region, service, SigningKeyKind.REGION
            )

        outcome = await verifier.verify(_vanilla_request(), resolve)
        assert isinstance(outcome, Authenticated)

    async def test_timeout(self):
        verifier = SigV4Verifier(_vanilla_settings(resolver_timeout=0.01))

        async def resolve(*args):
            await asyncio.sleep(1)

        outcome = await verifier.verify(_vanilla_request(), resolve)
        assert isinstance(outcome, Errored)
        assert isinstance(outcome.cause, KeyLookupError)
        assert outcome.cause.http_status == 503
        assert outcome.stage is VerificationState.CANONICALIZED

    async def test_resolver_exception(self, verifier):
        async def resolve(*args):
            raise ConnectionError("database unreachable")

        outcome = await verifier.verify(_vanilla_request(), resolve)
        assert isinstance(outcome, Errored)
        assert isinstance(outcome.cause, KeyLookupError)
        assert isinstance(outcome.cause.__cause__, ConnectionError)

    async def test_resolver_cancelled_internally(self, verifier):
        async def resolve(*args):
            raise asyncio.CancelledError()

        outcome = await verifier.verify(_vanilla_request(), resolve)
        assert isinstance(outcome, Errored)
        assert isinstance(outcome.cause, KeyLookupError)

    async def test_caller_cancellation_propagates(self, verifier):
        started = asyncio.Event()

        async def resolve(*args):
            started.set()
            await asyncio.sleep(10)

        task = asyncio.create_task(verifier.verify(_vanilla_request(), resolve))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    @pytest.mark.parametrize(
        "result",
        [
            "not a tuple",
            (SigningKeyKind.SECRET,),
            ("secret", VANILLA_SECRET.encode()),
            (SigningKeyKind.SECRET, b""),
            (SigningKeyKind.SECRET, VANILLA_SECRET),
        ],
    )
    async def test_contract_violation(self, verifier, result):
        async def resolve(*args):
            return result

        outcome = await verifier.verify(_vanilla_request(), resolve)
        assert isinstance(outcome, Errored)
        assert isinstance(outcome.cause, InternalError)
        assert outcome.cause.http_status == 500


# ---- Key material hygiene --------------------------------------------------


class TestKeyMaterial:
    """Key material is zeroed whatever the outcome."""

    @pytest.fixture
    def captured(self, monkeypatch):
        materials = []
        real = verifier_module.derive_signing_key

        def capture(material, credential):
            signing = real(material, credential)
            materials.extend([material, signing])
            return signing

        monkeypatch.setattr(verifier_module, "derive_signing_key", capture)
        return materials

    async def test_wiped_after_success(self, verifier, vanilla_resolver, captured):
        outcome = await verifier.verify(_vanilla_request(), vanilla_resolver)
        assert isinstance(outcome, Authenticated)
        assert len(captured) == 2
        assert all(material.wiped for material in captured)

    async def test_wiped_after_mismatch(self, verifier, vanilla_resolver, captured):
        outcome = await verifier.verify(_vanilla_request(path="/x"), vanilla_resolver)
        assert isinstance(outcome, Rejected)
        assert all(material.wiped for material in captured)

    async def test_key_not_in_outcome(self, verifier, vanilla_resolver):
        outcome = await verifier.verify(_vanilla_request(path="/x"), vanilla_resolver)
        assert VANILLA_SECRET not in repr(outcome)
        assert VANILLA_SECRET not in outcome.reason.message


# ---- Requests from the reference signer ------------------------------------


class TestSignedRequests:
    """Requests signed at the current time by the reference signer."""

    @pytest.fixture
    def verifier(self) -> SigV4Verifier:
        return SigV4Verifier(
            VerifierSettings(
                service="s3",
                allow_presigned=True,
                allow_unsigned_payload=True,
                normalize_uri_path=False,
            )
        )

    async def test_header_signed(self, verifier, resolver):
        headers = sign_request("GET", "/bucket/key", {"Host": "example.com"})
        outcome = await verifier.verify(
            SigV4Request.from_pairs("GET", "/bucket/key", headers=headers), resolver
        )
        assert outcome == Authenticated(access_key_id=ACCESS_KEY)

    async def test_query_and_body(self, verifier, resolver):
        body = b"<Delete><Object><Key>a</Key></Object></Delete>"
        headers = sign_request(
            "POST",
            "/bucket",
            {
                "Host": "example.com",
                "x-amz-content-sha256": hashlib.sha256(body).hexdigest(),
            },
            body=body,
            query_string="delete=",
        )
        request = SigV4Request.from_pairs("POST", "/bucket", "delete=", headers, body)
        assert isinstance(await verifier.verify(request, resolver), Authenticated)

    async def test_payload_hash_mismatch(self, verifier, resolver):
        headers = sign_request(
            "PUT", "/bucket/key", {"Host": "example.com", "x-amz-content-sha256": "0" * 64}
        )
        request = SigV4Request.from_pairs("PUT", "/bucket/key", headers=headers, body=b"data")
        outcome = await verifier.verify(request, resolver)
        assert isinstance(outcome, Rejected)
        assert outcome.reason.reason == "payload"

    async def test_unsigned_payload(self, verifier, resolver):
        headers = sign_request(
            "PUT",
            "/bucket/key",
            {"Host": "example.com", "x-amz-content-sha256": "UNSIGNED-PAYLOAD"},
        )
        request = SigV4Request.from_pairs("PUT", "/bucket/key", headers=headers, body=b"data")
        assert isinstance(await verifier.verify(request, resolver), Authenticated)

    async def test_session_token(self, verifier, resolver):
        headers = sign_request(
            "GET",
            "/",
            {"Host": "example.com", "x-amz-security-token": SESSION_TOKEN},
            access_key=TOKEN_ACCESS_KEY,
            secret_key=TOKEN_SECRET_KEY,
        )
        outcome = await verifier.verify(SigV4Request.from_pairs("GET", "/", headers=headers), resolver)
        assert outcome == Authenticated(access_key_id=TOKEN_ACCESS_KEY, session_token=SESSION_TOKEN)

    async def test_wrong_session_token(self, verifier, resolver):
        headers = sign_request(
            "GET",
            "/",
            {"Host": "example.com", "x-amz-security-token": "stolen"},
            access_key=TOKEN_ACCESS_KEY,
            secret_key=TOKEN_SECRET_KEY,
        )
        outcome = await verifier.verify(SigV4Request.from_pairs("GET", "/", headers=headers), resolver)
        assert isinstance(outcome.reason, InvalidCredentials)

    async def test_wrong_secret(self, verifier, resolver):
        headers = sign_request("GET", "/", {"Host": "example.com"}, secret_key="not-the-secret")
        outcome = await verifier.verify(SigV4Request.from_pairs("GET", "/", headers=headers), resolver)
        assert isinstance(outcome.reason, SignatureDoesNotMatch)

    async def test_presigned(self, verifier, resolver):
        query = presign_query("GET", "/bucket/key", host="example.com")
        request = SigV4Request.from_pairs(
            "GET", "/bucket/key", query, headers={"Host": "example.com"}
        )
        assert await verifier.verify(request, resolver) == Authenticated(access_key_id=ACCESS_KEY)

    async def test_presigned_expired(self, verifier, resolver):
        issued = (datetime.now(timezone.utc) - timedelta(hours=2)).strftime("%Y%m%dT%H%M%SZ")
        query = presign_query("GET", "/bucket/key", host="example.com", timestamp=issued)
        request = SigV4Request.from_pairs(
            "GET", "/bucket/key", query, headers={"Host": "example.com"}
        )
        outcome = await verifier.verify(request, resolver)
        assert isinstance(outcome, Rejected)
        assert outcome.reason.reason == "expired"
        assert outcome.stage is VerificationState.START

    async def test_presigned_tampered_path(self, verifier, resolver):
        query = presign_query("GET", "/bucket/key", host="example.com")
        request = SigV4Request.from_pairs(
            "GET", "/bucket/other", query, headers={"Host": "example.com"}
        )
        outcome = await verifier.verify(request, resolver)
        assert isinstance(outcome.reason, SignatureDoesNotMatch)

    async def test_concurrent_verifications(self, verifier, resolver):
        good = sign_request("GET", "/a", {"Host": "example.com"})
        bad = sign_request("GET", "/a", {"Host": "example.com"}, secret_key="wrong")
        requests = [
            SigV4Request.from_pairs("GET", "/a", headers=good if i % 2 else bad)
            for i in range(20)
        ]
        outcomes = await asyncio.gather(*(verifier.verify(r, resolver) for r in requests))
        for i, outcome in enumerate(outcomes):
            assert outcome.authenticated is bool(i % 2)
