"""
ID token verification.

This module performs comprehensive validation of ID tokens:
1. Splits the token and reads the header (kid, alg) without trusting it
2. Resolves the signing key through the JWKS cache
3. Verifies the signature over the exact header.payload bytes received
4. Decodes the payload and validates iss, aud, exp and token age

Each failure raises a distinct TokenValidationError subclass so callers and
logs always see the real cause.
"""

import binascii
import json
import logging
import time
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

from jose import jwk
from jose.exceptions import JWKError
from jose.utils import base64url_decode

from authgate.auth.jwks import JWKSCache
from authgate.errors import (
    AudienceMismatch,
    Expired,
    InvalidSignature,
    IssuerMismatch,
    KeyNotFound,
    MalformedToken,
    TooOld,
)
from authgate.models import Identity

logger = logging.getLogger(__name__)

DEFAULT_ALGORITHMS = ("RS256", "RS384", "RS512", "ES256", "ES384")


def _decode_segment(segment: bytes) -> Dict[str, Any]:
    """Base64url-decode a JWT segment into a JSON object."""
    try:
        decoded = json.loads(base64url_decode(segment))
    except (binascii.Error, ValueError) as e:
        raise MalformedToken(f"Token segment is not base64url JSON: {e}") from e
    if not isinstance(decoded, dict):
        raise MalformedToken("Token segment is not a JSON object")
    return decoded


def split_token(token: str) -> Tuple[bytes, Dict[str, Any], bytes, bytes]:
    """
    Split a compact JWT without verifying anything.

    Returns:
        (signing_input, header, payload_segment, signature_segment) where
        signing_input is the original 'header.payload' bytes
    """
    if not isinstance(token, str):
        raise MalformedToken("Token is not a string")
    try:
        raw = token.encode("ascii")
    except UnicodeEncodeError as e:
        raise MalformedToken("Token contains non-ASCII characters") from e

    parts = raw.split(b".")
    if len(parts) != 3 or not all(parts[:2]):
        raise MalformedToken("Token must have three dot-separated segments")

    header_segment, payload_segment, signature_segment = parts
    header = _decode_segment(header_segment)
    signing_input = header_segment + b"." + payload_segment
    return signing_input, header, payload_segment, signature_segment


def _numeric_claim(claims: Dict[str, Any], name: str) -> float:
    value = claims.get(name)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MalformedToken(f"Token claim '{name}' is missing or not numeric")
    try:
        return float(value)
    except OverflowError as e:
        raise MalformedToken(f"Token claim '{name}' is out of range") from e


class JWTVerifier:
    """
    Validates signed ID tokens against the identity provider's keys.

    Safe to share between concurrent requests: the only shared mutable state
    is the JWKS cache, which refreshes single-flight.
    """

    def __init__(
        self,
        jwks: JWKSCache,
        max_token_age_seconds: Optional[int] = None,
        leeway_seconds: int = 0,
        algorithms: Iterable[str] = DEFAULT_ALGORITHMS,
        clock: Callable[[], float] = time.time,
    ):
        self._jwks = jwks
        self._max_token_age_seconds = max_token_age_seconds
        self._leeway_seconds = leeway_seconds
        self._algorithms = frozenset(algorithms)
        self._clock = clock

    async def verify(self, token: str, expected_audience: str, expected_issuer: str) -> Identity:
        """
        Verify a token and return the identity it asserts.

        Args:
            token: Compact-serialized JWT
            expected_audience: Value that must appear in 'aud'
            expected_issuer: Exact required 'iss'

        Returns:
            Identity built from the verified claims

        Raises:
            MalformedToken, KeyNotFound, InvalidSignature, IssuerMismatch,
            AudienceMismatch, Expired, TooOld
            ProviderUnavailable: If the signing keys cannot be fetched
        """
        signing_input, header, payload_segment, signature_segment = split_token(token)

        kid = header.get("kid")
        if not kid or not isinstance(kid, str):
            raise MalformedToken("Token header missing 'kid' (Key ID)")

        algorithm = header.get("alg")
        if algorithm not in self._algorithms:
            logger.warning(f"Rejected token signed with disallowed algorithm: {algorithm}")
            raise InvalidSignature(f"Signing algorithm not allowed: {algorithm}")

        signing_key = await self._jwks.get_key(kid)
        if signing_key is None:
            logger.warning(f"No signing key for kid={kid}")
            raise KeyNotFound(f"Unable to find signing key for kid '{kid}'")

        self._verify_signature(signing_input, signature_segment, signing_key, algorithm)

        claims = _decode_segment(payload_segment)
        self._validate_claims(claims, expected_audience, expected_issuer)

        if not isinstance(claims.get("sub"), str) or not claims["sub"]:
            raise MalformedToken("Token claim 'sub' is missing")

        try:
            identity = Identity.from_claims(claims)
        except (TypeError, ValueError, OverflowError, OSError) as e:
            raise MalformedToken(f"Token claims cannot be represented: {e}") from e

        logger.debug("ID token verified", extra={"subject": claims["sub"], "kid": kid})
        return identity

    def _verify_signature(
        self,
        signing_input: bytes,
        signature_segment: bytes,
        signing_key: Dict[str, Any],
        algorithm: str,
    ) -> None:
        key_algorithm = signing_key.get("alg")
        if key_algorithm and key_algorithm != algorithm:
            raise InvalidSignature(f"Token algorithm {algorithm} does not match key algorithm {key_algorithm}")

        try:
            signature = base64url_decode(signature_segment)
        except (binascii.Error, ValueError) as e:
            raise InvalidSignature("Signature segment is not base64url") from e

        try:
            public_key = jwk.construct(signing_key, algorithm=algorithm)
        except (JWKError, KeyError, ValueError) as e:
            raise InvalidSignature(f"Failed to construct public key from JWK: {e}") from e

        try:
            verified = public_key.verify(signing_input, signature)
        except ValueError as e:
            raise InvalidSignature(f"Signature verification failed: {e}") from e
        if not verified:
            raise InvalidSignature("Signature verification failed")

    def _validate_claims(self, claims: Dict[str, Any], expected_audience: str, expected_issuer: str) -> None:
        if claims.get("iss") != expected_issuer:
            raise IssuerMismatch(f"Invalid issuer: {claims.get('iss')}")

        audience = claims.get("aud")
        if isinstance(audience, str):
            audience = [audience]
        if not isinstance(audience, list) or expected_audience not in audience:
            raise AudienceMismatch("Token audience does not include this client")

        now = self._clock()

        expires_at = _numeric_claim(claims, "exp")
        if expires_at + self._leeway_seconds <= now:
            raise Expired("ID token has expired")

        issued_at = _numeric_claim(claims, "iat") if "iat" in claims else None
        if self._max_token_age_seconds is not None:
            if issued_at is None:
                raise MalformedToken("Token claim 'iat' is missing")
            if now - issued_at > self._max_token_age_seconds + self._leeway_seconds:
                raise TooOld(f"ID token is older than {self._max_token_age_seconds} seconds")
