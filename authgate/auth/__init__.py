"""
Authentication Package

Implements the server-side OAuth 2.0 authorization code flow in front of a
protected application.

Modules:
- jwks: signing key cache with single-flight refresh
- verifier: ID token signature and claim validation
- oauth: authorize URL construction and code exchange
- middleware: per-request state machine and its Starlette adapter
- routes: /userinfo and /logout for authenticated sessions

The authentication flow:
1. An unauthenticated request is redirected to the identity provider
2. The provider redirects back to CALLBACK_PATH with a code and state
3. The gate consumes the state, exchanges the code and verifies the ID token
4. A session is stored and its id set as an HttpOnly cookie
5. Later requests are re-verified from the stored ID token
"""

from .middleware import AuthGateMiddleware, AuthMiddleware
from .routes import auth_router

__all__ = [
    "AuthGateMiddleware",
    "AuthMiddleware",
    "auth_router",
]
