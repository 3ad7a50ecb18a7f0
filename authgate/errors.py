"""
Error Taxonomy
==============

Every failure the gate can produce while handling a request is one of the
exceptions below. Each carries the HTTP status the middleware answers with
and a short machine-readable error code for the response body.

Protocol failures (state, exchange, token validation) are translated into a
rejection by the middleware and never reach the surrounding router.
"""

from typing import Optional


class AuthGateError(Exception):
    """Base exception for all gate errors"""

    status_code: int = 500
    error_code: str = "internal_error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.__class__.__doc__ or self.error_code)

    @property
    def message(self) -> str:
        return str(self)


# =============================================================================
# CSRF / State
# =============================================================================

class StateError(AuthGateError):
    """Login state could not be validated"""
    status_code = 401
    error_code = "invalid_state"


class StateNotFound(StateError):
    """State token is unknown, expired, or already consumed"""


# =============================================================================
# Token Exchange
# =============================================================================

class ExchangeError(AuthGateError):
    """Authorization code exchange failed"""
    status_code = 401
    error_code = "exchange_failed"


class ExchangeFailed(ExchangeError):
    """Token endpoint returned a non-success status or an unreadable body"""


class ProviderError(ExchangeError):
    """Identity provider reported an error"""

    error_code = "provider_error"

    def __init__(self, code: str, description: Optional[str] = None):
        self.code = code
        self.description = description
        detail = f"Identity provider error: {code}"
        if description:
            detail = f"{detail} ({description})"
        super().__init__(detail)


# =============================================================================
# Token Validation
# =============================================================================

class TokenValidationError(AuthGateError):
    """ID token failed validation"""
    status_code = 401
    error_code = "invalid_token"


class MalformedToken(TokenValidationError):
    """Token is not a well-formed JWT"""
    error_code = "malformed_token"


class KeyNotFound(TokenValidationError):
    """No signing key matches the token's key id"""
    error_code = "unknown_key"


class InvalidSignature(TokenValidationError):
    """Token signature is invalid"""
    error_code = "invalid_signature"


class IssuerMismatch(TokenValidationError):
    """Token issuer does not match the configured issuer"""
    error_code = "issuer_mismatch"


class AudienceMismatch(TokenValidationError):
    """Token audience does not include this client"""
    error_code = "audience_mismatch"


class Expired(TokenValidationError):
    """Token has expired"""
    error_code = "token_expired"


class TooOld(TokenValidationError):
    """Token was issued too long ago"""
    error_code = "token_too_old"


# =============================================================================
# Sessions
# =============================================================================

class SessionError(AuthGateError):
    """Session could not be loaded"""
    status_code = 401
    error_code = "invalid_session"


class SessionNotFound(SessionError):
    """Session id is unknown or expired"""


class CorruptSession(SessionError):
    """Stored session entry could not be decoded"""


# =============================================================================
# Infrastructure
# =============================================================================

class StoreUnavailable(AuthGateError):
    """Key-value store is unavailable or timed out"""
    status_code = 503
    error_code = "store_unavailable"


class ProviderUnavailable(AuthGateError):
    """Identity provider is unreachable or timed out"""
    status_code = 502
    error_code = "provider_unavailable"


class ConfigurationError(AuthGateError):
    """Required configuration is missing or invalid"""
    error_code = "configuration_error"


__all__ = [
    "AuthGateError",
    "StateError",
    "StateNotFound",
    "ExchangeError",
    "ExchangeFailed",
    "ProviderError",
    "TokenValidationError",
    "MalformedToken",
    "KeyNotFound",
    "InvalidSignature",
    "IssuerMismatch",
    "AudienceMismatch",
    "Expired",
    "TooOld",
    "SessionError",
    "SessionNotFound",
    "CorruptSession",
    "StoreUnavailable",
    "ProviderUnavailable",
    "ConfigurationError",
]
