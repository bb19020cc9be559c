"""
Notification channel selection on the receiving device.

The runtime environment is resolved once, at startup, into a
PlatformCapabilities value and injected. The selector never re-parses the
client identification string and never caches channel state: every read
derives it from the two underlying channels.

Detection order:
    1. Native wrapper (client id contains "StrideCampusApp") -> "expo"
    2. Service worker + Notification + PushManager           -> "pwa"
    3. Otherwise                                              -> "none"
"""

from dataclasses import dataclass
from typing import Literal, Optional

from stride.client.native_bridge import BrowserPushChannel, NativePushChannel


NATIVE_WRAPPER_MARKER = "StrideCampusApp"

ChannelType = Literal["expo", "pwa", "none"]
Permission = Literal["default", "granted", "denied"]

NOT_SUPPORTED = "not supported"


@dataclass(frozen=True)
class PlatformCapabilities:
    """What the current runtime can do, resolved once."""

    is_native_wrapper: bool = False
    has_service_worker: bool = False
    has_notification: bool = False
    has_push_manager: bool = False
    notification_permission: Permission = "default"

    @property
    def supports_web_push(self) -> bool:
        return self.has_service_worker and self.has_notification and self.has_push_manager

    @classmethod
    def detect(
        cls,
        user_agent: str = "",
        has_service_worker: bool = False,
        has_notification: bool = False,
        has_push_manager: bool = False,
        notification_permission: Permission = "default",
    ) -> "PlatformCapabilities":
        """Build capabilities from raw environment facts."""
        return cls(
            is_native_wrapper=NATIVE_WRAPPER_MARKER in (user_agent or ""),
            has_service_worker=has_service_worker,
            has_notification=has_notification,
            has_push_manager=has_push_manager,
            notification_permission=notification_permission,
        )

    @property
    def environment(self) -> ChannelType:
        if self.is_native_wrapper:
            return "expo"
        if self.supports_web_push:
            return "pwa"
        return "none"


@dataclass(frozen=True)
class ChannelState:
    """Snapshot of the selected channel's state."""

    type: ChannelType
    is_supported: bool
    permission: Permission
    is_loading: bool = False
    push_token: Optional[str] = None


@dataclass(frozen=True)
class PermissionResult:
    granted: bool
    channel: ChannelType
    reason: Optional[str] = None


class UnifiedNotificationSelector:
    """
    Picks which notification channel the device trusts.

    Args:
        capabilities: Runtime capabilities resolved at startup
        native: Mobile push channel (inside the wrapper)
        browser: Browser push channel
    """

    def __init__(
        self,
        capabilities: PlatformCapabilities,
        native: NativePushChannel,
        browser: BrowserPushChannel,
    ):
        self.capabilities = capabilities
        self.native = native
        self.browser = browser

    @property
    def selected_type(self) -> ChannelType:
        if self.capabilities.is_native_wrapper and self.native.is_supported:
            return "expo"
        if self.browser.is_supported:
            return "pwa"
        return "none"

    @property
    def state(self) -> ChannelState:
        selected = self.selected_type
        if selected == "expo":
            return ChannelState(
                type="expo",
                is_supported=True,
                permission=self.native.permission,
                is_loading=self.native.is_loading,
                push_token=self.native.token,
            )
        if selected == "pwa":
            return ChannelState(
                type="pwa",
                is_supported=True,
                permission=self.browser.permission,
                is_loading=self.browser.is_loading,
            )
        return ChannelState(type="none", is_supported=False, permission="denied")

    async def request_permission(self) -> PermissionResult:
        """
        Ask the selected channel for notification permission.

        Returns a "not supported" result when no channel is available.
        """
        selected = self.selected_type
        if selected == "expo":
            return PermissionResult(await self.native.request_permission(), "expo")
        if selected == "pwa":
            return PermissionResult(await self.browser.request_permission(), "pwa")
        return PermissionResult(False, "none", NOT_SUPPORTED)
