"""
Upstream Credential Store.

Single writer of UpstreamCredential records. Credentials are loaded lazily
from the backing store on first use, cached in process, persisted as soon as
they are acquired or refreshed, and removed from both places when the
upstream rejects them.

Two concurrent refreshes for one identity are not coordinated: each refresh
is a complete, valid credential and the later write wins.
"""

import logging
from typing import Protocol

from .errors import UpstreamRejected
from .models import UpstreamCredential
from .storage import KeyValueStore

logger = logging.getLogger(__name__)


class CredentialRefresher(Protocol):
    async def refresh(self, credential: UpstreamCredential) -> UpstreamCredential: ...


class UpstreamCredentialStore:
    """Per-identity upstream credentials with an in-process cache."""

    def __init__(self, store: KeyValueStore, refresher: CredentialRefresher):
        self._store = store
        self._refresher = refresher
        self._cache: dict[str, UpstreamCredential] = {}

    async def get(self, identity: str) -> UpstreamCredential | None:
        """Return the credential for an identity, loading it from storage if needed."""
        cached = self._cache.get(identity)
        if cached is not None:
            return cached

        data = await self._store.get(identity)
        if data is None:
            logger.debug(f"No stored credential for identity {identity}")
            return None

        credential = UpstreamCredential.model_validate(data)
        self._cache[identity] = credential
        logger.debug(f"Loaded credential for identity {identity} from storage")
        return credential

    async def save(self, credential: UpstreamCredential) -> None:
        """Persist a credential, replacing any previous one for the same identity."""
        await self._store.put(credential.identity, credential.model_dump(mode="json"))
        self._cache[credential.identity] = credential
        logger.info(f"Saved upstream credential for identity {credential.identity}")

    async def invalidate(self, identity: str) -> bool:
        """Drop a credential from cache and storage. Returns True if anything was removed."""
        cached = self._cache.pop(identity, None) is not None
        stored = await self._store.delete(identity)
        if cached or stored:
            logger.warning(f"Invalidated upstream credential for identity {identity}")
        return cached or stored

    async def refresh(self, credential: UpstreamCredential) -> UpstreamCredential:
        """Refresh against the upstream and persist the result."""
        refreshed = await self._refresher.refresh(credential)
        await self.save(refreshed)
        return refreshed

    async def ensure_fresh(self, credential: UpstreamCredential) -> UpstreamCredential:
        """
        Return a usable credential, refreshing it first if it has expired.

        Raises:
            UpstreamRejected: if the credential has expired and cannot be refreshed
        """
        if not credential.is_expired():
            return credential
        if not credential.can_refresh:
            raise UpstreamRejected(
                f"Credential for {credential.identity} expired and has no refresh token"
            )
        logger.info(f"Credential for identity {credential.identity} expired, refreshing")
        return await self.refresh(credential)
