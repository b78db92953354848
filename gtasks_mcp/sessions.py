"""
Session Registry.

Sessions are opaque identifiers handed to trusted transports (the stdio proxy
and the plain HTTP task routes) after an upstream consent. A session only
references an identity; the credential itself lives in the
UpstreamCredentialStore.

Sessions expire after a sliding idle period: every successful resolve pushes
the expiry forward.
"""

import logging
import secrets
import time

from .credentials import UpstreamCredentialStore
from .errors import SessionNotFound
from .models import Session, UpstreamCredential
from .storage import KeyValueStore

logger = logging.getLogger(__name__)

SESSION_IDLE_TTL_SECONDS = 30 * 24 * 60 * 60


class SessionRegistry:
    def __init__(
        self,
        sessions: KeyValueStore,
        index: KeyValueStore,
        credentials: UpstreamCredentialStore,
        idle_ttl: int = SESSION_IDLE_TTL_SECONDS,
    ):
        self.sessions = sessions
        self.index = index  # identity -> session_id
        self.credentials = credentials
        self.idle_ttl = idle_ttl

    async def _live_session(self, session_id: str, now: float) -> Session | None:
        data = await self.sessions.get(session_id)
        if data is None:
            return None
        session = Session.model_validate(data)
        if session.last_used_at + self.idle_ttl < now:
            return None
        return session

    async def _store(self, session: Session) -> None:
        expires_at = session.last_used_at + self.idle_ttl
        await self.sessions.put(session.session_id, session.model_dump(mode="json"), expires_at=expires_at)
        await self.index.put(session.identity, {"session_id": session.session_id}, expires_at=expires_at)

    async def upsert_session(self, identity: str, credential: UpstreamCredential) -> str:
        """
        Store the credential for an identity and return its session id.

        Calling this again for the same identity replaces the credential and
        returns the same session id while the session is alive.
        """
        if credential.identity != identity:
            credential = credential.model_copy(update={"identity": identity})
        await self.credentials.save(credential)

        now = time.time()
        session: Session | None = None
        indexed = await self.index.get(identity)
        if indexed:
            session = await self._live_session(indexed["session_id"], now)

        if session is None:
            session = Session(session_id=secrets.token_urlsafe(32), identity=identity, created_at=now, last_used_at=now)
            logger.info(f"Created session {session.session_id[:8]}... for identity {identity}")
        else:
            session.last_used_at = now
            logger.info(f"Reusing session {session.session_id[:8]}... for identity {identity}")

        await self._store(session)
        return session.session_id

    async def resolve(self, session_id: str | None) -> UpstreamCredential:
        """
        Return the credential behind a session.

        Raises:
            SessionNotFound: unknown or idle-expired session, or its credential is gone
        """
        if not session_id:
            raise SessionNotFound("No session id provided")

        now = time.time()
        session = await self._live_session(session_id, now)
        if session is None:
            logger.debug(f"Session {session_id[:8]}... not found or expired")
            await self.sessions.delete(session_id)
            raise SessionNotFound("Session not found or expired")

        credential = await self.credentials.get(session.identity)
        if credential is None:
            logger.warning(f"Session {session_id[:8]}... has no credential, dropping it")
            await self.sessions.delete(session_id)
            await self.index.delete(session.identity)
            raise SessionNotFound("Session credential is no longer available")

        session.last_used_at = now
        await self._store(session)
        return credential

    async def identity_for(self, session_id: str) -> str | None:
        session = await self._live_session(session_id, time.time())
        return session.identity if session else None

    async def invalidate(self, session_id: str) -> bool:
        """Remove a session, its identity index entry and its credential."""
        data = await self.sessions.pop(session_id)
        if data is None:
            return False
        session = Session.model_validate(data)
        await self.index.delete(session.identity)
        await self.credentials.invalidate(session.identity)
        logger.warning(f"Invalidated session {session_id[:8]}... for identity {session.identity}")
        return True
