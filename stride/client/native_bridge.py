"""
Message bridge between the native mobile wrapper and its embedded web view.

Both sides exchange JSON strings over a postMessage-style channel; the
``type`` field selects the handler. NativePushChannel is the web view's
view of mobile push: it asks the wrapper for a token and tracks the
permission the wrapper reports back.
"""

import asyncio
import enum
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, ValidationError


logger = logging.getLogger(__name__)


class BridgeMessageType(str, enum.Enum):
    """Dispatch keys understood by either side of the bridge."""

    APP_READY = "APP_READY"
    REQUEST_PUSH_TOKEN = "REQUEST_PUSH_TOKEN"
    EXPO_PUSH_TOKEN = "EXPO_PUSH_TOKEN"
    FCM_TOKEN = "FCM_TOKEN"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    REQUEST_PERMISSION_STATUS = "REQUEST_PERMISSION_STATUS"
    PERMISSION_STATUS = "PERMISSION_STATUS"
    REQUEST_NOTIFICATION_PERMISSION = "REQUEST_NOTIFICATION_PERMISSION"
    NOTIFICATION_PERMISSION_DENIED = "NOTIFICATION_PERMISSION_DENIED"
    NOTIFICATION_RECEIVED = "NOTIFICATION_RECEIVED"
    NAVIGATE_TO_URL = "NAVIGATE_TO_URL"
    TEST_NOTIFICATION = "TEST_NOTIFICATION"
    TRIGGER_TOKEN_SYNC = "TRIGGER_TOKEN_SYNC"
    TOKEN_SYNC_COMPLETED = "TOKEN_SYNC_COMPLETED"


TOKEN_MESSAGE_TYPES = {
    BridgeMessageType.EXPO_PUSH_TOKEN,
    BridgeMessageType.FCM_TOKEN,
    BridgeMessageType.TOKEN_REFRESHED,
}


class BridgeProtocolError(ValueError):
    """Raised when a bridge frame is not valid JSON or lacks a type."""
    pass


class BridgeMessage(BaseModel):
    """One bridge frame. Fields other than ``type`` depend on the type."""

    model_config = ConfigDict(extra="allow")

    type: str

    def get(self, key: str, default: Any = None) -> Any:
        return (self.model_extra or {}).get(key, default)

    def encode(self) -> str:
        return json.dumps(self.model_dump())

    @classmethod
    def decode(cls, raw: str) -> "BridgeMessage":
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as e:
            raise BridgeProtocolError(f"Bridge frame is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise BridgeProtocolError("Bridge frame must be a JSON object")
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise BridgeProtocolError(f"Bridge frame has no type: {e}") from e


def navigation_for_notification(data: Dict[str, Any]) -> Optional[str]:
    """
    Web route to open when the user taps a notification.

    Returns:
        Path to navigate to, or None if the notification has no target
    """
    kind = data.get("type")
    if kind == "message":
        return "/chats"
    if kind == "follow":
        sender = data.get("senderId")
        return f"/u/{sender}" if sender else None
    if kind == "event":
        return "/arena"
    return data.get("url")


Handler = Callable[[BridgeMessage], Any]


class NativeBridge:
    """
    One endpoint of the bridge.

    Args:
        post_message: Sends a JSON string to the other side
    """

    def __init__(self, post_message: Callable[[str], None]):
        self._post_message = post_message
        self._handlers: Dict[str, List[Handler]] = {}

    def on(self, message_type: str, handler: Handler) -> Callable[[], None]:
        """
        Register a handler for a message type.

        Returns:
            A function that removes the handler
        """
        key = getattr(message_type, "value", message_type)
        self._handlers.setdefault(key, []).append(handler)

        def remove() -> None:
            handlers = self._handlers.get(key, [])
            if handler in handlers:
                handlers.remove(handler)

        return remove

    def send(self, message_type: str, **fields: Any) -> None:
        message = BridgeMessage(type=getattr(message_type, "value", message_type), **fields)
        self._post_message(message.encode())

    async def receive(self, raw: str) -> int:
        """
        Dispatch an inbound frame to its handlers.

        Malformed frames are logged and dropped. A failing handler is logged
        and does not stop the others.

        Returns:
            Number of handlers invoked
        """
        try:
            message = BridgeMessage.decode(raw)
        except BridgeProtocolError as e:
            logger.warning("Dropping bridge frame: %s", e)
            return 0

        handlers = list(self._handlers.get(message.type, []))
        if not handlers:
            logger.debug("No handler for bridge message %s", message.type)
        for handler in handlers:
            try:
                result = handler(message)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Bridge handler failed for %s", message.type)
        return len(handlers)


class NativePushChannel:
    """
    Mobile push as seen from inside the native wrapper's web view.

    Supported only when running inside the wrapper. The token and
    permission are whatever the wrapper last reported.
    """

    def __init__(self, bridge: NativeBridge, supported: bool):
        self.bridge = bridge
        self.supported = supported
        self.permission = "default"
        self.token: Optional[str] = None
        self.is_loading = False
        self._listeners: List[Callable[[], None]] = []
        self._answered = asyncio.Event()

        for message_type in TOKEN_MESSAGE_TYPES:
            bridge.on(message_type, self._on_token)
        bridge.on(BridgeMessageType.PERMISSION_STATUS, self._on_permission_status)
        bridge.on(BridgeMessageType.NOTIFICATION_PERMISSION_DENIED, self._on_denied)

        if supported:
            bridge.send(BridgeMessageType.REQUEST_PUSH_TOKEN)

    @property
    def is_supported(self) -> bool:
        return self.supported

    def add_listener(self, listener: Callable[[], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _changed(self) -> None:
        for listener in list(self._listeners):
            listener()

    def _on_token(self, message: BridgeMessage) -> None:
        token = message.get("token")
        if not token:
            return
        self.token = token
        self.permission = "granted"
        self._answered.set()
        self._changed()

    def _on_permission_status(self, message: BridgeMessage) -> None:
        status = message.get("status") or message.get("permission")
        if status in ("granted", "denied", "default"):
            self.permission = status
            self._changed()

    def _on_denied(self, message: BridgeMessage) -> None:
        self.permission = "denied"
        self._answered.set()
        self._changed()

    async def request_permission(self, timeout: float = 1.0) -> bool:
        """
        Ask the wrapper to request notification permission.

        Waits up to ``timeout`` seconds for a token or a denial.

        Returns:
            True if permission is granted and a token is available
        """
        if not self.supported:
            logger.warning("Mobile push is only available inside the app")
            return False

        self.is_loading = True
        self._answered.clear()
        self._changed()
        try:
            self.bridge.send(BridgeMessageType.REQUEST_NOTIFICATION_PERMISSION)
            try:
                await asyncio.wait_for(self._answered.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.debug("No permission answer from the app within %ss", timeout)
        finally:
            self.is_loading = False
            self._changed()

        return self.permission == "granted" and bool(self.token)

    def send_test_notification(self) -> None:
        self.bridge.send(BridgeMessageType.TEST_NOTIFICATION)


class BrowserPushChannel:
    """
    Browser notifications (service worker + Notification + PushManager).

    Args:
        supported: Whether the browser exposes the required capabilities
        permission: Current Notification.permission value
        requester: Prompts the user; returns the resulting permission
    """

    def __init__(
        self,
        supported: bool,
        permission: str = "default",
        requester: Optional[Callable[[], Awaitable[str]]] = None,
    ):
        self.supported = supported
        self.permission = permission
        self.is_loading = False
        self._requester = requester

    @property
    def is_supported(self) -> bool:
        return self.supported

    async def request_permission(self) -> bool:
        if not self.supported or self._requester is None:
            return False
        self.is_loading = True
        try:
            self.permission = await self._requester()
        finally:
            self.is_loading = False
        return self.permission == "granted"
