"""
Per-user pipeline settings: webhook endpoint and dictionary terms.

The remote ``user_profiles`` row is the source of truth. The last copy
seen is kept in memory and in the device cache so the queue driver still
knows where to deliver while offline.
"""

import logging

from secretary.core.exceptions import ConnectivityError
from secretary.core.models import UserProfile
from secretary.services.remote.base import RemoteStore
from secretary.services.storage.cache import LocalCacheStore

logger = logging.getLogger(__name__)


class UserSettingsService:
    """Resolves the active user's webhook URL and dictionary.

    Args:
        store: Remote store client for the user.
        cache: Device cache used as the offline fallback.
        default_webhook_url: Endpoint used when the profile has none.
    """

    def __init__(
        self,
        store: RemoteStore,
        cache: LocalCacheStore,
        default_webhook_url: str = "",
    ) -> None:
        self._store = store
        self._cache = cache
        self._default_webhook_url = default_webhook_url or None
        self._profile: UserProfile | None = None

    async def load(self, refresh: bool = False) -> UserProfile:
        """Return the profile, fetching it remotely when possible."""
        if self._profile is not None and not refresh:
            return self._profile
        user_id = self._store.user_id
        try:
            profile = await self._store.get_user_profile()
        except ConnectivityError as exc:
            logger.warning("Profile fetch failed, using cached copy: %s", exc.detail)
            profile = await self._cache.load_profile(user_id)
        else:
            if profile is not None:
                await self._cache.save_profile(profile)
        self._profile = profile or UserProfile(user_id=user_id)
        return self._profile

    async def webhook_url(self) -> str | None:
        profile = await self.load()
        return profile.webhook_url or self._default_webhook_url

    async def dictionary(self) -> list[str]:
        profile = await self.load()
        return list(profile.dictionary)

    async def update(self, webhook_url: str | None, dictionary: list[str]) -> UserProfile:
        """Save new settings remotely and refresh both caches.

        Raises:
            ConnectivityError: If the remote store is unreachable.
        """
        cleaned = [term.strip() for term in dictionary if term and term.strip()]
        profile = await self._store.save_user_profile(webhook_url or None, cleaned)
        await self._cache.save_profile(profile)
        self._profile = profile
        logger.info("Profile updated for %s", profile.user_id)
        return profile

    def invalidate(self) -> None:
        self._profile = None
