"""
Authenticated routes served by the gate itself.

Every endpoint sits behind AuthGateMiddleware, so it only runs for requests
that already carry a valid session.
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, HTTPException, Request, status
from fastapi.responses import RedirectResponse

from authgate.auth.middleware import LOGIN_PATH, AuthMiddleware, clear_session_cookie, login_return_url
from authgate.models import Identity

logger = logging.getLogger(__name__)


# =============================================================================
# Router Setup
# =============================================================================

auth_router = APIRouter(tags=["authentication"])


# =============================================================================
# Dependencies
# =============================================================================

def get_identity(request: Request) -> Identity:
    """
    Identity attached to the request by the gate.

    Raises:
        HTTPException: If the route was reached without passing the gate
    """
    identity = getattr(request.state, "identity", None)
    if identity is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    return identity


def get_gate(request: Request) -> AuthMiddleware:
    return request.app.state.gate


# =============================================================================
# Endpoints
# =============================================================================

@auth_router.get(LOGIN_PATH)
async def login(request: Request) -> RedirectResponse:
    """
    Explicit login entry point.

    An unauthenticated browser never reaches this handler: the gate sends it
    to the identity provider and brings it back to `return_to`. A browser that
    is already signed in goes straight there.
    """
    get_identity(request)
    return RedirectResponse(url=login_return_url(request), status_code=status.HTTP_302_FOUND)


@auth_router.get("/userinfo")
async def userinfo(request: Request) -> Dict[str, Any]:
    """
    Return the verified ID token claims of the current session.

    Returns:
        Claims as issued by the identity provider
    """
    return get_identity(request).claims


@auth_router.post("/logout")
async def logout(request: Request) -> RedirectResponse:
    """
    End the current session.

    Deletes the server-side session, clears the cookie and redirects to
    LOGOUT_REDIRECT_URL. Store failures propagate as 503.

    POST only: the Lax session cookie rides along on cross-site top-level
    GET navigations.
    """
    gate = get_gate(request)
    identity = get_identity(request)
    session_id = request.state.session_id

    await gate.session_store.delete(session_id)

    logger.info(
        "Session ended",
        extra={"subject": identity.subject, "session": session_id[:8] + "..."},
    )

    response = RedirectResponse(url=gate.settings.LOGOUT_REDIRECT_URL, status_code=status.HTTP_302_FOUND)
    clear_session_cookie(response, gate.settings)
    return response
