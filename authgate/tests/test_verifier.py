"""
ID Token Verification Tests

Tests signature verification over the received bytes and the claim checks
(issuer, audience, expiry, token age), each failing with its own error.
"""

from unittest.mock import AsyncMock, Mock

import pytest
from jose.utils import base64url_decode, base64url_encode

from authgate.auth.verifier import JWTVerifier, split_token
from authgate.errors import (
    AudienceMismatch,
    Expired,
    InvalidSignature,
    IssuerMismatch,
    KeyNotFound,
    MalformedToken,
    ProviderUnavailable,
    TooOld,
)
from authgate.tests.conftest import (
    CLIENT_ID,
    ISSUER,
    OTHER_PRIVATE_KEY,
    TEST_KID,
    make_id_token,
    make_jwk,
)

NOW = 1_700_000_000.0


def make_jwks_cache(keys=None):
    keys = {TEST_KID: make_jwk()} if keys is None else keys
    cache = Mock()
    cache.get_key = AsyncMock(side_effect=lambda kid: keys.get(kid))
    return cache


def make_verifier(cache=None, **kwargs) -> JWTVerifier:
    return JWTVerifier(cache or make_jwks_cache(), clock=lambda: NOW, **kwargs)


async def verify(verifier: JWTVerifier, token: str):
    return await verifier.verify(token, expected_audience=CLIENT_ID, expected_issuer=ISSUER)


def flip_signature_bit(token: str) -> str:
    header, payload, signature = token.split(".")
    raw = bytearray(base64url_decode(signature.encode()))
    raw[len(raw) // 2] ^= 0x01
    return f"{header}.{payload}.{base64url_encode(bytes(raw)).decode()}"


class TestSignatureVerification:
    """Test suite for signature checks"""

    @pytest.mark.asyncio
    async def test_valid_token_yields_identity(self):
        identity = await verify(make_verifier(), make_id_token(now=NOW))

        assert identity.subject == "auth0|test-user-123"
        assert identity.issuer == ISSUER
        assert identity.audience == [CLIENT_ID]
        assert identity.claims["email"] == "user@example.com"

    @pytest.mark.asyncio
    async def test_single_bit_flip_in_signature_is_rejected(self):
        token = flip_signature_bit(make_id_token(now=NOW))

        with pytest.raises(InvalidSignature):
            await verify(make_verifier(), token)

    @pytest.mark.asyncio
    async def test_modified_payload_is_rejected(self):
        header, _, signature = make_id_token(now=NOW).split(".")
        _, forged_payload, _ = make_id_token(now=NOW, sub="attacker").split(".")

        with pytest.raises(InvalidSignature):
            await verify(make_verifier(), f"{header}.{forged_payload}.{signature}")

    @pytest.mark.asyncio
    async def test_token_signed_by_other_key_is_rejected(self):
        token = make_id_token(now=NOW, private_key=OTHER_PRIVATE_KEY)

        with pytest.raises(InvalidSignature):
            await verify(make_verifier(), token)

    @pytest.mark.asyncio
    async def test_disallowed_algorithm_is_rejected(self):
        token = make_id_token(now=NOW, private_key="shared-secret-value-long-enough-for-hs256", algorithm="HS256")

        with pytest.raises(InvalidSignature):
            await verify(make_verifier(), token)

    @pytest.mark.asyncio
    async def test_unknown_kid_raises_key_not_found(self):
        token = make_id_token(now=NOW, kid="not-published")

        with pytest.raises(KeyNotFound):
            await verify(make_verifier(), token)

    @pytest.mark.asyncio
    async def test_key_fetch_failure_propagates(self):
        cache = Mock()
        cache.get_key = AsyncMock(side_effect=ProviderUnavailable())

        with pytest.raises(ProviderUnavailable):
            await verify(make_verifier(cache), make_id_token(now=NOW))


class TestMalformedTokens:
    """Test suite for structurally invalid tokens"""

    @pytest.mark.parametrize("token", [
        "",
        "not-a-jwt",
        "a.b",
        "a.b.c.d",
        ".payload.signature",
        "!!!.@@@.###",
        "héader.payload.signature",
    ])
    @pytest.mark.asyncio
    async def test_structurally_invalid_token(self, token):
        with pytest.raises(MalformedToken):
            await verify(make_verifier(), token)

    @pytest.mark.asyncio
    async def test_missing_kid(self):
        token = make_id_token(now=NOW, kid="")

        with pytest.raises(MalformedToken):
            await verify(make_verifier(), token)

    @pytest.mark.asyncio
    async def test_missing_subject(self):
        token = make_id_token(now=NOW, sub="")

        with pytest.raises(MalformedToken):
            await verify(make_verifier(), token)

    def test_split_token_keeps_original_signing_input(self):
        token = make_id_token(now=NOW)
        signing_input, header, _, _ = split_token(token)

        assert signing_input == token.rsplit(".", 1)[0].encode()
        assert header["kid"] == TEST_KID


class TestClaimValidation:
    """Test suite for issuer, audience and time checks"""

    @pytest.mark.asyncio
    async def test_wrong_issuer(self):
        token = make_id_token(now=NOW, iss="https://evil.example.com/")

        with pytest.raises(IssuerMismatch):
            await verify(make_verifier(), token)

    @pytest.mark.asyncio
    async def test_wrong_audience(self):
        token = make_id_token(now=NOW, aud="someone-else")

        with pytest.raises(AudienceMismatch):
            await verify(make_verifier(), token)

    @pytest.mark.asyncio
    async def test_audience_list_containing_client(self):
        token = make_id_token(now=NOW, aud=["https://api.example.com", CLIENT_ID])

        identity = await verify(make_verifier(), token)

        assert CLIENT_ID in identity.audience

    @pytest.mark.asyncio
    async def test_expired_one_second_ago(self):
        token = make_id_token(now=NOW - 3601, exp_delta_seconds=3600)

        with pytest.raises(Expired):
            await verify(make_verifier(), token)

    @pytest.mark.asyncio
    async def test_expires_in_one_second(self):
        token = make_id_token(now=NOW - 3599, exp_delta_seconds=3600)

        identity = await verify(make_verifier(), token)

        assert identity.expires_at.timestamp() == NOW + 1

    @pytest.mark.asyncio
    async def test_expiring_exactly_now_is_expired(self):
        token = make_id_token(now=NOW - 3600, exp_delta_seconds=3600)

        with pytest.raises(Expired):
            await verify(make_verifier(), token)

    @pytest.mark.asyncio
    async def test_leeway_tolerates_clock_skew(self):
        token = make_id_token(now=NOW - 3605, exp_delta_seconds=3600)

        identity = await verify(make_verifier(leeway_seconds=30), token)

        assert identity.subject == "auth0|test-user-123"

    @pytest.mark.asyncio
    async def test_missing_exp(self):
        token = make_id_token(now=NOW, exp=None)

        with pytest.raises(MalformedToken):
            await verify(make_verifier(), token)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("claims", [
        {"iat": "yesterday"},
        {"iat": [NOW]},
        {"exp": 10**20},
        {"exp": 10**400},
        {"aud": [CLIENT_ID, 42]},
    ])
    async def test_unrepresentable_claims_are_malformed(self, claims):
        token = make_id_token(now=NOW, **claims)

        with pytest.raises(MalformedToken):
            await verify(make_verifier(), token)

    @pytest.mark.asyncio
    async def test_non_numeric_iat_is_malformed_without_max_age(self):
        token = make_id_token(now=NOW, iat="2023-11-14")

        with pytest.raises(MalformedToken):
            await verify(make_verifier(max_token_age_seconds=None), token)

    @pytest.mark.asyncio
    async def test_max_age_requires_iat(self):
        token = make_id_token(now=NOW, iat=None)

        with pytest.raises(MalformedToken):
            await verify(make_verifier(max_token_age_seconds=3600), token)

    @pytest.mark.asyncio
    async def test_token_older_than_max_age(self):
        token = make_id_token(now=NOW - 7200, exp_delta_seconds=86400)

        with pytest.raises(TooOld):
            await verify(make_verifier(max_token_age_seconds=3600), token)

    @pytest.mark.asyncio
    async def test_token_within_max_age(self):
        token = make_id_token(now=NOW - 600, exp_delta_seconds=86400)

        identity = await verify(make_verifier(max_token_age_seconds=3600), token)

        assert identity.issued_at.timestamp() == NOW - 600

    @pytest.mark.asyncio
    async def test_max_age_not_enforced_when_unset(self):
        token = make_id_token(now=NOW - 30 * 86400, exp_delta_seconds=31 * 86400)

        identity = await verify(make_verifier(), token)

        assert identity.subject == "auth0|test-user-123"
