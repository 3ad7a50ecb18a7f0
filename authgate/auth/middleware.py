"""
Authentication Middleware
=========================

The protocol state machine that decides, for every incoming request, whether
it may proceed, must be redirected, or is rejected.

States (checked in this order):
    CALLBACK         path == CALLBACK_PATH: consume state, exchange code,
                     verify ID token, create session, redirect to return URL
    AUTHENTICATED    session cookie resolves to a re-verified identity:
                     forward to the next handler unchanged
    UNAUTHENTICATED  anything else: store a pending state and redirect to
                     the identity provider

A session whose lookup or re-verification fails is deleted and the request
is handled as UNAUTHENTICATED, so a dead session restarts the login instead
of looping. Protocol failures become a Reject; infrastructure failures become
a retryable 502/503; anything unexpected becomes a generic 500.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from fastapi import Request, status
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from authgate.auth.oauth import OAuthClient
from authgate.auth.verifier import JWTVerifier
from authgate.config import Settings
from authgate.errors import (
    ExchangeError,
    ProviderUnavailable,
    SessionError,
    StateNotFound,
    StoreUnavailable,
    TokenValidationError,
)
from authgate.models import (
    AuthOutcome,
    ErrorResponse,
    Identity,
    Proceed,
    Redirect,
    Reject,
    SessionCookie,
)
from authgate.stores.session import SessionStore, is_well_formed_session_id
from authgate.stores.state import StateStore

logger = logging.getLogger(__name__)

LOGIN_PATH = "/login"
DEFAULT_LOGIN_RETURN_URL = "/userinfo"


# =============================================================================
# Return URL Helpers
# =============================================================================

def safe_return_url(url: Optional[str]) -> str:
    """
    Restrict a post-login target to a same-origin relative URL.

    Anything absolute or protocol-relative ('//host', '/\\host') becomes '/'.
    """
    if not url or not url.startswith("/") or url.startswith("//") or url.startswith("/\\"):
        return "/"
    return url


def login_return_url(request: Request) -> str:
    """Post-login target named by the 'return_to' parameter of /login."""
    return_to = request.query_params.get("return_to")
    if return_to is None:
        return DEFAULT_LOGIN_RETURN_URL
    return safe_return_url(return_to)


def request_return_url(request: Request) -> str:
    """
    Relative URL (path and query) of the request being redirected to login.

    An explicit /login request names its target instead of returning to itself.
    """
    if request.url.path == LOGIN_PATH:
        return login_return_url(request)
    url = "/" + request.url.path.lstrip("/")
    if request.url.query:
        url = f"{url}?{request.url.query}"
    return safe_return_url(url)


# =============================================================================
# State Machine
# =============================================================================

class AuthMiddleware:
    """
    Decides the outcome of a request from its cookie, path and query.

    All collaborators and settings are injected at construction; instances
    hold no per-request state and are shared across requests.
    """

    def __init__(
        self,
        settings: Settings,
        state_store: StateStore,
        session_store: SessionStore,
        oauth_client: OAuthClient,
        verifier: JWTVerifier,
    ):
        self._settings = settings
        self._state_store = state_store
        self._session_store = session_store
        self._oauth = oauth_client
        self._verifier = verifier

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def session_store(self) -> SessionStore:
        return self._session_store

    async def authenticate(self, request: Request) -> AuthOutcome:
        """
        Run the state machine for one request.

        Returns:
            Proceed, Redirect or Reject. Never raises.
        """
        try:
            if request.url.path == self._settings.CALLBACK_PATH:
                return await self._handle_callback(request)

            cookie_present = self._settings.COOKIE_NAME in request.cookies
            session_id = self.read_session_cookie(request)

            if session_id is not None:
                identity = await self._resolve_session(session_id)
                if identity is not None:
                    return Proceed(identity=identity, session_id=session_id)

            return await self._start_login(request, clear_cookie=cookie_present)

        except (StoreUnavailable, ProviderUnavailable) as e:
            logger.error(
                f"Authentication unavailable: {e}",
                extra={"path": request.url.path, "error_code": e.error_code},
            )
            return Reject(status_code=e.status_code, error=e.error_code, message="Service temporarily unavailable")
        except Exception as e:
            logger.error(
                f"Unexpected error during authentication: {e}",
                extra={"path": request.url.path, "exception_type": type(e).__name__},
                exc_info=True,
            )
            return Reject(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                error="internal_error",
                message="An unexpected error occurred",
            )

    def read_session_cookie(self, request: Request) -> Optional[str]:
        """Session id from the cookie, or None if absent or malformed."""
        value = request.cookies.get(self._settings.COOKIE_NAME)
        if value is None:
            return None
        if not is_well_formed_session_id(value):
            logger.info("Ignoring malformed session cookie", extra={"path": request.url.path})
            return None
        return value

    # -------------------------------------------------------------------------
    # UNAUTHENTICATED
    # -------------------------------------------------------------------------

    async def _start_login(self, request: Request, clear_cookie: bool) -> Redirect:
        return_url = request_return_url(request)
        # Awaited before the redirect is built so the callback can find the state.
        state_token = await self._state_store.create(return_url)

        logger.info("Redirecting to identity provider", extra={"path": request.url.path})
        return Redirect(
            location=self._oauth.build_authorize_url(state_token),
            clear_cookie=clear_cookie,
        )

    # -------------------------------------------------------------------------
    # AUTHENTICATED
    # -------------------------------------------------------------------------

    async def _resolve_session(self, session_id: str) -> Optional[Identity]:
        """
        Re-derive the identity of a session from its stored ID token.

        Returns None (after deleting the entry) when the session is missing,
        unreadable, or its ID token no longer verifies.
        """
        try:
            token_response = await self._session_store.lookup(session_id)
            return await self._verifier.verify(
                token_response.id_token,
                expected_audience=self._settings.audience,
                expected_issuer=self._settings.issuer,
            )
        except (SessionError, TokenValidationError) as e:
            logger.info(
                f"Discarding session: {e}",
                extra={"session": session_id[:8] + "...", "error_code": e.error_code},
            )
            await self._session_store.delete(session_id)
            return None

    # -------------------------------------------------------------------------
    # CALLBACK
    # -------------------------------------------------------------------------

    async def _handle_callback(self, request: Request) -> AuthOutcome:
        params = request.query_params
        state_token = params.get("state")

        if not state_token:
            logger.warning("Callback without state parameter")
            return Reject(
                status_code=status.HTTP_403_FORBIDDEN,
                error="missing_state",
                message="Missing state parameter",
            )

        try:
            return_url = await self._state_store.consume(state_token)
        except StateNotFound as e:
            return Reject(status_code=e.status_code, error=e.error_code, message="Invalid or expired login state")

        provider_error = params.get("error")
        if provider_error:
            logger.warning(f"Identity provider returned error to callback: {provider_error}")
            return Reject(
                status_code=status.HTTP_401_UNAUTHORIZED,
                error="provider_error",
                message="Authentication was not completed",
            )

        code = params.get("code")
        if not code:
            return Reject(
                status_code=status.HTTP_403_FORBIDDEN,
                error="missing_code",
                message="Missing authorization code",
            )

        try:
            token_response = await self._oauth.exchange_code(code)
            identity = await self._verifier.verify(
                token_response.id_token,
                expected_audience=self._settings.audience,
                expected_issuer=self._settings.issuer,
            )
        except (ExchangeError, TokenValidationError) as e:
            logger.warning(f"Login failed: {e}", extra={"error_code": e.error_code})
            return Reject(status_code=e.status_code, error=e.error_code, message="Authentication failed")

        session_id = await self._session_store.create(token_response)
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=self._session_store.ttl_seconds)

        previous_session_id = self.read_session_cookie(request)
        if previous_session_id is not None:
            await self._discard_previous_session(previous_session_id)

        logger.info(
            "Login completed",
            extra={"subject": identity.subject, "session": session_id[:8] + "..."},
        )
        return Redirect(
            location=safe_return_url(return_url),
            session_cookie=SessionCookie(session_id=session_id, expires_at=expires_at),
        )

    async def _discard_previous_session(self, session_id: str) -> None:
        # The new session is already stored; a failed cleanup only leaves an entry to expire.
        try:
            await self._session_store.delete(session_id)
        except StoreUnavailable as e:
            logger.warning(f"Could not delete replaced session: {e}", extra={"session": session_id[:8] + "..."})


# =============================================================================
# Responses
# =============================================================================

def set_session_cookie(response: Response, settings: Settings, cookie: SessionCookie) -> None:
    response.set_cookie(
        key=settings.COOKIE_NAME,
        value=cookie.session_id,
        expires=cookie.expires_at,
        path="/",
        domain=settings.COOKIE_DOMAIN,
        secure=True,
        httponly=True,
        samesite="lax",
    )


def clear_session_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        key=settings.COOKIE_NAME,
        path="/",
        domain=settings.COOKIE_DOMAIN,
        secure=True,
        httponly=True,
        samesite="lax",
    )


def build_response(outcome: AuthOutcome, settings: Settings) -> Response:
    """Render a Redirect or Reject outcome as an HTTP response."""
    if isinstance(outcome, Redirect):
        response: Response = RedirectResponse(url=outcome.location, status_code=status.HTTP_302_FOUND)
        if outcome.session_cookie is not None:
            set_session_cookie(response, settings, outcome.session_cookie)
        elif outcome.clear_cookie:
            clear_session_cookie(response, settings)
        return response

    if isinstance(outcome, Reject):
        body = ErrorResponse(error=outcome.error, message=outcome.message)
        response = JSONResponse(status_code=outcome.status_code, content=body.model_dump())
        if outcome.clear_cookie:
            clear_session_cookie(response, settings)
        return response

    raise TypeError(f"Outcome does not produce a response: {type(outcome).__name__}")


# =============================================================================
# Starlette Adapter
# =============================================================================

class AuthGateMiddleware(BaseHTTPMiddleware):
    """
    Applies AuthMiddleware to every request that is not exempt.

    On Proceed the verified identity is exposed as `request.state.identity`
    and the request continues to the next handler, whose response is returned
    untouched.
    """

    def __init__(self, app, gate: AuthMiddleware, exempt_paths: Iterable[str] = ()):
        super().__init__(app)
        self._gate = gate
        self._exempt_paths = frozenset(exempt_paths)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path in self._exempt_paths:
            return await call_next(request)

        outcome = await self._gate.authenticate(request)

        if isinstance(outcome, Proceed):
            request.state.identity = outcome.identity
            request.state.session_id = outcome.session_id
            return await call_next(request)

        return build_response(outcome, self._gate.settings)
