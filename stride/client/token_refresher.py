"""
Periodic revalidation of the device's mobile push token.

Every check looks at the locally stored token first (format and age), then
asks the server. A token failing either check is replaced with a fresh one
from the device's push provider, persisted with its timestamp and
registered with the server. When registration fails the token is kept and
flagged for a later sync.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

from stride.client.api_client import ApiError, StrideApiClient
from stride.client.native_bridge import BridgeMessageType, NativeBridge
from stride.client.storage import KeyValueStorage
from stride.services.token_registry import TokenRegistryService

logger = logging.getLogger(__name__)


TOKEN_KEY = "expoPushToken"
TIMESTAMP_KEY = "tokenTimestamp"
PENDING_SYNC_KEY = "pendingTokenSync"

DEFAULT_CHECK_INTERVAL_SECONDS = 30 * 60
DEFAULT_MAX_TOKEN_AGE = timedelta(hours=24)


class TokenRefresher:
    """
    Keeps the stored push token fresh and registered.

    Args:
        storage: Durable key-value storage on the device
        api: Client for the push token endpoints
        fetch_token: Asks the push provider for a new token (None when unavailable)
        bridge: Optional native bridge; refreshed tokens are posted to the web view
        check_interval: Seconds between checks in run()
        max_token_age: Tokens older than this are replaced
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        api: StrideApiClient,
        fetch_token: Callable[[], Awaitable[Optional[str]]],
        bridge: Optional[NativeBridge] = None,
        check_interval: float = DEFAULT_CHECK_INTERVAL_SECONDS,
        max_token_age: timedelta = DEFAULT_MAX_TOKEN_AGE,
    ):
        self.storage = storage
        self.api = api
        self.fetch_token = fetch_token
        self.bridge = bridge
        self.check_interval = check_interval
        self.max_token_age = max_token_age
        self._task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()

    @property
    def stored_token(self) -> Optional[str]:
        return self.storage.get_item(TOKEN_KEY)

    @property
    def token_timestamp(self) -> Optional[datetime]:
        raw = self.storage.get_item(TIMESTAMP_KEY)
        if not raw:
            return None
        try:
            value = datetime.fromisoformat(raw)
        except ValueError:
            logger.warning("Ignoring unreadable token timestamp %r", raw)
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value

    @property
    def pending_sync(self) -> bool:
        return self.storage.get_item(PENDING_SYNC_KEY) == "true"

    def is_locally_valid(self) -> bool:
        """Format check plus age check against max_token_age."""
        token = self.stored_token
        if not token or not TokenRegistryService.is_valid_token_format(token):
            return False
        stamp = self.token_timestamp
        if stamp is None:
            return False
        return datetime.now(timezone.utc) - stamp < self.max_token_age

    async def check(self) -> Optional[str]:
        """
        Run one validation cycle.

        Returns:
            The new token if the stored one was replaced, else None
        """
        if self.pending_sync:
            await self.sync_pending()

        if not self.is_locally_valid():
            logger.info("Stored push token missing, malformed or stale; refreshing")
            return await self.refresh()

        try:
            verdict = await self.api.validate_push_token(self.stored_token)
        except ApiError as e:
            # Keep the token; the next cycle asks again
            logger.warning("Could not validate push token with server: %s", e)
            return None

        if verdict.get("should_reregister") or not verdict.get("valid", False):
            logger.info("Server rejected stored push token; refreshing")
            return await self.refresh()
        return None

    async def refresh(self) -> Optional[str]:
        """Fetch, persist and register a new token."""
        token = await self.fetch_token()
        if not token:
            logger.warning("Push provider returned no token")
            return None

        self.storage.set_item(TOKEN_KEY, token)
        self.storage.set_item(TIMESTAMP_KEY, datetime.now(timezone.utc).isoformat())
        await self._register(token)

        if self.bridge is not None:
            self.bridge.send(BridgeMessageType.TOKEN_REFRESHED, token=token)
        return token

    async def sync_pending(self) -> bool:
        """Retry a registration that failed earlier."""
        token = self.stored_token
        if not token:
            self.storage.remove_item(PENDING_SYNC_KEY)
            return False
        return await self._register(token)

    async def _register(self, token: str) -> bool:
        try:
            await self.api.register_push_token(token, "mobile-push")
        except ApiError as e:
            logger.warning("Token registration failed, will retry: %s", e)
            self.storage.set_item(PENDING_SYNC_KEY, "true")
            return False
        self.storage.remove_item(PENDING_SYNC_KEY)
        if self.bridge is not None:
            self.bridge.send(BridgeMessageType.TOKEN_SYNC_COMPLETED, token=token)
        return True

    async def run(self) -> None:
        """Check immediately, then every check_interval seconds until stopped."""
        self._stop.clear()
        while not self._stop.is_set():
            try:
                await self.check()
            except Exception as e:
                logger.error("Push token check failed: %s", e, exc_info=True)
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.check_interval)
            except asyncio.TimeoutError:
                pass

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        self._stop.set()
        if self._task is not None:
            await self._task
            self._task = None
