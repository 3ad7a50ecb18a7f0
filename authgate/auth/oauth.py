"""
OAuth 2.0 authorization code client.

Builds the authorize redirect and exchanges the authorization code returned
to the callback for tokens at the identity provider's token endpoint.
"""

import asyncio
import logging
from urllib.parse import urlencode

import httpx
from pydantic import ValidationError

from authgate.config import Settings
from authgate.errors import ExchangeFailed, ProviderError, ProviderUnavailable
from authgate.models import TokenResponse

logger = logging.getLogger(__name__)


def _retrieve_result(task: "asyncio.Future") -> None:
    if not task.cancelled():
        task.exception()


class OAuthClient:
    """The two outbound interactions with the identity provider."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self._settings = settings
        self._http = http_client

    def build_authorize_url(self, state_token: str) -> str:
        """
        Build the authorization URL for a login attempt.

        Pure function of configuration and `state_token`.

        Args:
            state_token: One-time state stored before redirecting

        Returns:
            Authorization endpoint URL with query parameters
        """
        params = {
            "response_type": "code",
            "client_id": self._settings.CLIENT_ID,
            "redirect_uri": self._settings.REDIRECT_URI,
            "scope": " ".join(self._settings.scopes_list),
            "state": state_token,
        }
        separator = "&" if "?" in self._settings.authorize_url else "?"
        return f"{self._settings.authorize_url}{separator}{urlencode(params)}"

    async def exchange_code(self, code: str) -> TokenResponse:
        """
        Exchange authorization code for access and ID tokens.

        Exactly one request is made; a failed exchange is never retried
        because the identity provider accepts each code only once.

        Args:
            code: Authorization code from callback

        Returns:
            Token response containing id_token, access_token, etc.

        Raises:
            ProviderError: If the response body carries an 'error' field
            ExchangeFailed: On non-success status or a malformed body
            ProviderUnavailable: On timeout or transport failure
        """
        payload = {
            "grant_type": "authorization_code",
            "client_id": self._settings.CLIENT_ID,
            "client_secret": self._settings.CLIENT_SECRET,
            "code": code,
            "redirect_uri": self._settings.REDIRECT_URI,
        }

        # An abandoned request still lets an in-flight exchange finish.
        request = asyncio.ensure_future(self._http.post(
            self._settings.token_url,
            json=payload,
            headers={"Accept": "application/json"},
            timeout=self._settings.HTTP_TIMEOUT_SECONDS,
        ))
        request.add_done_callback(_retrieve_result)

        try:
            response = await asyncio.shield(request)
        except httpx.TimeoutException as e:
            logger.error("Token exchange timed out")
            raise ProviderUnavailable("Token endpoint timed out") from e
        except httpx.HTTPError as e:
            logger.error(f"Token exchange request failed: {e}")
            raise ProviderUnavailable("Unable to reach token endpoint") from e

        try:
            token_data = response.json()
        except ValueError as e:
            logger.warning(f"Token endpoint returned non-JSON body (status {response.status_code})")
            raise ExchangeFailed(f"Token exchange failed with status {response.status_code}") from e

        if isinstance(token_data, dict) and token_data.get("error"):
            error_code = str(token_data["error"])
            logger.warning(
                f"Token exchange rejected by identity provider: {error_code}",
                extra={"status_code": response.status_code},
            )
            raise ProviderError(error_code, token_data.get("error_description"))

        if not response.is_success:
            logger.warning(f"Token exchange failed with status {response.status_code}")
            raise ExchangeFailed(f"Token exchange failed with status {response.status_code}")

        if not isinstance(token_data, dict):
            raise ExchangeFailed("Token response is not a JSON object")

        try:
            token_response = TokenResponse.model_validate(token_data)
        except ValidationError as e:
            logger.warning(f"Token response rejected: {e.error_count()} validation errors")
            raise ExchangeFailed("Token response missing id_token or access_token") from e

        logger.info("Authorization code exchanged for tokens")
        return token_response
