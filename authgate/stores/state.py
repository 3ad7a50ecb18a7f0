"""
Pending login state storage.

A state token binds the redirect to the identity provider to the callback
that comes back from it (CSRF protection) and remembers where the browser
was going.

Store Schema:
  Key: state:{token}
  Value: PendingState JSON (return_url, created_at)
  TTL: STATE_TTL_SECONDS

Single-Use Enforcement:
  - consume() reads and deletes through KeyValueStore.get_and_delete
  - a second consume() with the same token raises StateNotFound
  - unconsumed states expire with the TTL
"""

import logging
import secrets

from pydantic import ValidationError

from authgate.errors import StateNotFound
from authgate.models import PendingState
from authgate.stores.kv import KeyValueStore, bounded

logger = logging.getLogger(__name__)

STATE_KEY_PREFIX = "state:"
STATE_TOKEN_BYTES = 32


class StateStore:
    """Creates and consumes one-time login state tokens."""

    def __init__(self, kv: KeyValueStore, ttl_seconds: int, timeout_seconds: float):
        self._kv = kv
        self._ttl_seconds = ttl_seconds
        self._timeout_seconds = timeout_seconds

    @staticmethod
    def _key(state_token: str) -> str:
        return f"{STATE_KEY_PREFIX}{state_token}"

    async def create(self, return_url: str) -> str:
        """
        Generate a state token and persist the return URL under it.

        The write is awaited, so the token is queryable before the caller
        sends the redirect.

        Args:
            return_url: Relative URL the user was trying to reach

        Returns:
            URL-safe state token (256 bits of entropy)
        """
        state_token = secrets.token_urlsafe(STATE_TOKEN_BYTES)
        pending = PendingState(return_url=return_url)

        await bounded(
            self._kv.put(self._key(state_token), pending.model_dump_json(), ttl_seconds=self._ttl_seconds),
            self._timeout_seconds,
            "state write",
            shield=True,
        )

        logger.info(
            "Login state stored",
            extra={"state": state_token[:8] + "...", "ttl_seconds": self._ttl_seconds},
        )
        return state_token

    async def consume(self, state_token: str) -> str:
        """
        Retrieve and DELETE a pending state (single use).

        Args:
            state_token: State parameter from the callback

        Returns:
            The return URL recorded when the state was created

        Raises:
            StateNotFound: If the token is unknown, expired, or already used
            StoreUnavailable: If the store cannot be reached in time
        """
        value = await bounded(
            self._kv.get_and_delete(self._key(state_token)),
            self._timeout_seconds,
            "state consume",
            shield=True,
        )

        if value is None:
            logger.warning(
                "Login state not found or already used",
                extra={"state": state_token[:8] + "..."},
            )
            raise StateNotFound()

        try:
            pending = PendingState.model_validate_json(value)
        except ValidationError as e:
            logger.error(f"Stored login state is unreadable: {e}", extra={"state": state_token[:8] + "..."})
            raise StateNotFound("Stored login state is unreadable") from e

        logger.info("Login state consumed", extra={"state": state_token[:8] + "..."})
        return pending.return_url
