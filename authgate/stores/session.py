"""
Server-Side Session Storage
===========================

Persists the identity provider's token response under an opaque session id.
The session id is the only thing the browser holds (in the session cookie).

The stored entry is treated as untrusted bytes: callers must re-verify the
ID token it contains before deriving an identity from it.
"""

import logging
import re
import secrets

from pydantic import ValidationError

from authgate.errors import CorruptSession, SessionNotFound
from authgate.models import TokenResponse
from authgate.stores.kv import KeyValueStore, bounded

logger = logging.getLogger(__name__)

SESSION_KEY_PREFIX = "session:"
SESSION_ID_BYTES = 32

# token_urlsafe(32) yields 43 characters from the URL-safe base64 alphabet.
SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{43}$")


def is_well_formed_session_id(value: object) -> bool:
    """True if `value` has the shape of an id this store would issue."""
    return isinstance(value, str) and SESSION_ID_PATTERN.fullmatch(value) is not None


class SessionStore:
    """Creates, loads and deletes sessions in the key-value store."""

    def __init__(self, kv: KeyValueStore, ttl_seconds: int, timeout_seconds: float):
        self._kv = kv
        self._ttl_seconds = ttl_seconds
        self._timeout_seconds = timeout_seconds

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    @staticmethod
    def _key(session_id: str) -> str:
        return f"{SESSION_KEY_PREFIX}{session_id}"

    async def create(self, token_response: TokenResponse) -> str:
        """
        Store a token response under a fresh session id.

        Args:
            token_response: Verified token exchange response

        Returns:
            New session id (256 bits of entropy)
        """
        session_id = secrets.token_urlsafe(SESSION_ID_BYTES)

        await bounded(
            self._kv.put(self._key(session_id), token_response.to_storage(), ttl_seconds=self._ttl_seconds),
            self._timeout_seconds,
            "session write",
            shield=True,
        )

        logger.info(
            "Session created",
            extra={"session": session_id[:8] + "...", "ttl_seconds": self._ttl_seconds},
        )
        return session_id

    async def lookup(self, session_id: str) -> TokenResponse:
        """
        Load the token response stored for a session.

        Raises:
            SessionNotFound: If the session is unknown or expired
            CorruptSession: If the stored entry cannot be decoded
            StoreUnavailable: If the store cannot be reached in time
        """
        value = await bounded(
            self._kv.get(self._key(session_id)),
            self._timeout_seconds,
            "session read",
        )

        if value is None:
            logger.debug("Session not found", extra={"session": session_id[:8] + "..."})
            raise SessionNotFound()

        try:
            return TokenResponse.model_validate_json(value)
        except ValidationError as e:
            logger.warning(f"Stored session is unreadable: {e.error_count()} errors",
                           extra={"session": session_id[:8] + "..."})
            raise CorruptSession() from e

    async def delete(self, session_id: str) -> None:
        """Remove a session. Unknown ids are ignored."""
        await bounded(
            self._kv.delete(self._key(session_id)),
            self._timeout_seconds,
            "session delete",
            shield=True,
        )
        logger.info("Session deleted", extra={"session": session_id[:8] + "..."})
