"""
Local chat-session cache.

Keeps the device's AI-chat conversations in durable key-value storage:

    stride_chat_sessions   JSON object {session_id: ChatSession}
    stride_active_session  id of the active session
    stride_last_sync       ISO timestamp of the last persisted write
    stride_user_id         identity the cached sessions belong to

Loading is defensive. Each stored session goes through validation and
migration, and a session that fails is skipped. Unreadable storage resets
the cache to an empty, initialized state. Writes are debounced; call
``flush()`` (or ``close()``) during teardown so a pending write is not lost.

Mutations never edit the current session map in place: each builds a new
map and swaps it in, so a reader holding the previous map never sees a
half-applied change.
"""

import asyncio
import json
import logging
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictStr,
    ValidationError,
    field_validator,
)
from pydantic.alias_generators import to_camel

from stride.client.storage import KeyValueStorage, StorageError


logger = logging.getLogger(__name__)


STORAGE_KEYS = {
    "sessions": "stride_chat_sessions",
    "active_session": "stride_active_session",
    "last_sync": "stride_last_sync",
    "user_id": "stride_user_id",
}

DEFAULT_TITLE = "Untitled Chat"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id(prefix: str = "") -> str:
    return f"{prefix}{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class CacheConfig(BaseModel):
    """Capacity and timing limits for the session cache."""

    max_sessions: int = Field(default=50, ge=1)
    max_messages_per_session: int = Field(default=1000, ge=1)
    save_debounce_seconds: float = Field(default=0.1, ge=0)
    title_max_length: int = Field(default=50, ge=1)


class SessionValidationError(ValueError):
    """Raised when a stored session cannot be validated or migrated."""
    pass


# ============================================================================
# Entities
# ============================================================================


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    @field_validator("*", mode="after")
    @classmethod
    def _assume_utc(cls, v: Any) -> Any:
        if isinstance(v, datetime) and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class ChatMessage(_CamelModel):
    """One message in a chat session. Content must be a string, author flag a bool."""

    id: StrictStr = Field(..., min_length=1)
    content: StrictStr
    is_user: StrictBool
    timestamp: datetime = Field(default_factory=_utcnow)


class ChatSession(_CamelModel):
    """
    One AI-chat conversation thread.

    ``message_count`` always equals ``len(messages)``.
    """

    id: StrictStr = Field(..., min_length=1)
    title: StrictStr = DEFAULT_TITLE
    messages: List[ChatMessage] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    is_active: bool = False
    message_count: int = 0

    def to_storage(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


def _migrate_message(raw: Any) -> Dict[str, Any]:
    if not isinstance(raw, dict):
        raise SessionValidationError("Message entry is not an object")

    migrated = dict(raw)
    # Older clients stored the author as role: "user" | "assistant"
    if "isUser" not in migrated and "is_user" not in migrated and "role" in migrated:
        migrated["isUser"] = migrated.pop("role") == "user"
    migrated.setdefault("timestamp", _utcnow())
    return migrated


def validate_and_migrate_session(raw: Any) -> ChatSession:
    """
    Turn one stored session into a ChatSession, migrating older layouts.

    Required: ``id`` and ``title``. Every message needs an id, string content
    and a boolean author flag. Dates must parse. Missing dates default to now,
    ``messageCount`` is recomputed from the messages.

    Raises:
        SessionValidationError: If the session cannot be trusted
    """
    if not isinstance(raw, dict):
        raise SessionValidationError("Session entry is not an object")
    if not raw.get("id") or not raw.get("title"):
        raise SessionValidationError("Missing required session fields")

    messages = raw.get("messages")
    if not isinstance(messages, list):
        messages = []

    migrated = {
        "id": raw["id"],
        "title": raw["title"],
        "messages": [_migrate_message(m) for m in messages],
        "createdAt": raw.get("createdAt") or raw.get("created_at") or _utcnow(),
        "updatedAt": raw.get("updatedAt") or raw.get("updated_at") or _utcnow(),
        "isActive": bool(raw.get("isActive", raw.get("is_active", False))),
    }

    try:
        session = ChatSession.model_validate(migrated)
    except ValidationError as e:
        raise SessionValidationError(str(e)) from e

    return session.model_copy(update={"message_count": len(session.messages)})


# ============================================================================
# Store
# ============================================================================


class SessionStore:
    """
    Device-side cache of chat sessions for one signed-in identity.

    Exactly one session is active at a time. Every public mutation
    schedules a debounced save. Call ``load()`` before anything else:
    mutations made earlier stay in memory only, are logged as a warning,
    and are replaced by whatever ``load()`` reads.

    Args:
        storage: Durable key-value storage
        user_id: Signed-in identity. When it differs from the identity the
            cache was last written for, cached sessions are purged on load.
        config: Capacity and timing limits

    Example:
        >>> store = SessionStore(MemoryStorage(), user_id="U1")
        >>> store.load()
        >>> session = store.create_session()
        >>> store.add_message({"content": "How do I cite a paper?", "isUser": True})
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        user_id: Optional[str] = None,
        config: Optional[CacheConfig] = None,
    ):
        self.storage = storage
        self.user_id = user_id
        self.config = config or CacheConfig()

        self._sessions: Dict[str, ChatSession] = {}
        self._active_session_id: Optional[str] = None
        self._last_sync: Optional[datetime] = None
        self._initialized = False
        self._save_handle: Optional[asyncio.TimerHandle] = None

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def sessions(self) -> Dict[str, ChatSession]:
        """Snapshot of the session map."""
        return dict(self._sessions)

    @property
    def active_session_id(self) -> Optional[str]:
        return self._active_session_id

    @property
    def active_session(self) -> Optional[ChatSession]:
        if not self._active_session_id:
            return None
        return self._sessions.get(self._active_session_id)

    @property
    def last_sync(self) -> Optional[datetime]:
        return self._last_sync

    @property
    def has_pending_save(self) -> bool:
        return self._save_handle is not None

    def get_session(self, session_id: str) -> Optional[ChatSession]:
        return self._sessions.get(session_id)

    def list_sessions(self) -> List[ChatSession]:
        """Sessions ordered most recently updated first."""
        return sorted(self._sessions.values(), key=lambda s: s.updated_at, reverse=True)

    def _commit(
        self,
        sessions: Dict[str, ChatSession],
        active_session_id: Optional[str],
    ) -> None:
        self._sessions = sessions
        self._active_session_id = active_session_id
        self.schedule_save()

    # -------------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------------

    def load(self) -> Dict[str, ChatSession]:
        """
        Initialize the store from storage.

        Corrupt sessions are skipped; unreadable storage resets the store.
        A changed identity purges every cached session first.

        Returns:
            The loaded session map
        """
        try:
            stored_user = self.storage.get_item(STORAGE_KEYS["user_id"])

            if self.user_id and stored_user != self.user_id:
                logger.info(
                    "Signed-in identity changed, purging cached sessions"
                )
                self.storage.remove_items(
                    STORAGE_KEYS["sessions"],
                    STORAGE_KEYS["active_session"],
                    STORAGE_KEYS["last_sync"],
                )
                self.storage.set_item(STORAGE_KEYS["user_id"], self.user_id)
                self._reset_state()
                return self.sessions

            raw_sessions = self.storage.get_item(STORAGE_KEYS["sessions"])
            stored_active = self.storage.get_item(STORAGE_KEYS["active_session"])
            stored_last_sync = self.storage.get_item(STORAGE_KEYS["last_sync"])
        except StorageError as e:
            logger.error("Failed to read session storage: %s", e)
            self.recover_from_corruption()
            return self.sessions

        if not raw_sessions:
            self._reset_state()
            return self.sessions

        try:
            sessions_data = json.loads(raw_sessions)
        except json.JSONDecodeError as e:
            logger.error("Stored sessions are not valid JSON: %s", e)
            self.recover_from_corruption()
            return self.sessions

        if not isinstance(sessions_data, dict):
            logger.error("Stored sessions are not an object")
            self.recover_from_corruption()
            return self.sessions

        sessions: Dict[str, ChatSession] = {}
        for session_id, session_data in sessions_data.items():
            try:
                session = validate_and_migrate_session(session_data)
            except SessionValidationError as e:
                logger.warning("Skipping invalid session %s: %s", session_id, e)
                continue
            sessions[session.id] = session

        active_id = stored_active if stored_active in sessions else None
        sessions = {
            sid: s.model_copy(update={"is_active": sid == active_id})
            if s.is_active != (sid == active_id) else s
            for sid, s in sessions.items()
        }

        self._sessions = sessions
        self._active_session_id = active_id
        self._last_sync = self._parse_timestamp(stored_last_sync)
        self._initialized = True

        skipped = len(sessions_data) - len(sessions)
        logger.debug(
            "Loaded %d sessions (%d skipped), active=%s",
            len(sessions), skipped, active_id,
        )
        return self.sessions

    @staticmethod
    def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
        if not value:
            return None
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)

    def _reset_state(self) -> None:
        self._cancel_pending_save()
        self._sessions = {}
        self._active_session_id = None
        self._last_sync = None
        self._initialized = True

    def recover_from_corruption(self) -> None:
        """Drop all cached data and leave the store empty and initialized."""
        logger.warning("Recovering session cache from corrupted data")
        try:
            self.storage.remove_items(
                STORAGE_KEYS["sessions"],
                STORAGE_KEYS["active_session"],
                STORAGE_KEYS["last_sync"],
            )
        except StorageError:
            try:
                self.storage.reset()
            except StorageError as e:
                logger.error("Failed to reset session storage: %s", e)
        self._reset_state()

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def schedule_save(self) -> None:
        """
        Persist after the debounce window, coalescing rapid mutations.

        Without a running event loop there is nothing to defer to, so the
        write happens immediately.
        """
        if not self._initialized:
            logger.warning("Session store used before load(); change will not be persisted")
            return

        self._cancel_pending_save()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.save()
            return

        self._save_handle = loop.call_later(
            self.config.save_debounce_seconds, self._debounced_save
        )

    def _debounced_save(self) -> None:
        self._save_handle = None
        self.save()

    def _cancel_pending_save(self) -> None:
        if self._save_handle is not None:
            self._save_handle.cancel()
            self._save_handle = None

    def save(self) -> bool:
        """
        Write the current state to storage now.

        On a write failure, persisted session data is removed so the next
        load starts clean instead of reading a half-written state.

        Returns:
            True if the write succeeded
        """
        now = _utcnow()
        payload = json.dumps({sid: s.to_storage() for sid, s in self._sessions.items()})
        try:
            self.storage.set_item(STORAGE_KEYS["sessions"], payload)
            if self._active_session_id:
                self.storage.set_item(STORAGE_KEYS["active_session"], self._active_session_id)
            else:
                self.storage.remove_item(STORAGE_KEYS["active_session"])
            self.storage.set_item(STORAGE_KEYS["last_sync"], now.isoformat())
            if self.user_id:
                self.storage.set_item(STORAGE_KEYS["user_id"], self.user_id)
        except StorageError as e:
            logger.error("Failed to save sessions: %s", e)
            try:
                self.storage.remove_items(
                    STORAGE_KEYS["sessions"],
                    STORAGE_KEYS["active_session"],
                    STORAGE_KEYS["last_sync"],
                )
            except StorageError as clear_error:
                logger.error("Failed to clear session storage: %s", clear_error)
            return False

        self._last_sync = now
        return True

    def flush(self) -> bool:
        """Write any pending debounced save immediately."""
        if self._save_handle is None:
            return False
        self._cancel_pending_save()
        return self.save()

    def close(self) -> None:
        """Flush pending writes. Call on shutdown or view teardown."""
        self.flush()

    # -------------------------------------------------------------------------
    # Sessions
    # -------------------------------------------------------------------------

    def create_session(self, title: Optional[str] = None) -> ChatSession:
        """
        Create a session and make it the active one.

        The previously active session is deactivated. When the cap is
        exceeded, the least recently updated sessions are evicted; the new
        session is always kept.
        """
        now = _utcnow()
        session = ChatSession(
            id=_new_id("session_"),
            title=title or f"Chat {now.date().isoformat()}",
            created_at=now,
            updated_at=now,
            is_active=True,
        )

        sessions = self._deactivated(self._sessions, self._active_session_id)

        if len(sessions) + 1 > self.config.max_sessions:
            keep = self.config.max_sessions - 1
            ordered = sorted(sessions.values(), key=lambda s: s.updated_at, reverse=True)
            evicted = [s.id for s in ordered[keep:]]
            sessions = {s.id: s for s in ordered[:keep]}
            logger.debug("Evicted %d sessions over the cap", len(evicted))

        sessions[session.id] = session
        self._commit(sessions, session.id)
        return session

    @staticmethod
    def _deactivated(
        sessions: Dict[str, ChatSession],
        session_id: Optional[str],
    ) -> Dict[str, ChatSession]:
        updated = dict(sessions)
        if session_id and session_id in updated:
            updated[session_id] = updated[session_id].model_copy(update={"is_active": False})
        return updated

    def switch_to_session(self, session_id: str) -> bool:
        """Activate an existing session. Returns False if it does not exist."""
        target = self._sessions.get(session_id)
        if target is None:
            logger.warning("Cannot switch to unknown session %s", session_id)
            return False
        if session_id == self._active_session_id:
            return True

        sessions = self._deactivated(self._sessions, self._active_session_id)
        sessions[session_id] = target.model_copy(update={"is_active": True})
        self._commit(sessions, session_id)
        return True

    def delete_session(self, session_id: str) -> bool:
        """
        Delete a session.

        Deleting the active session activates the most recently updated
        remaining one, if any.
        """
        if session_id not in self._sessions:
            return False

        sessions = dict(self._sessions)
        del sessions[session_id]

        active_id = self._active_session_id
        if active_id == session_id:
            remaining = sorted(sessions.values(), key=lambda s: s.updated_at, reverse=True)
            active_id = remaining[0].id if remaining else None
            if active_id:
                sessions[active_id] = sessions[active_id].model_copy(update={"is_active": True})

        self._commit(sessions, active_id)
        return True

    def clear_all_sessions(self) -> None:
        """Remove every session from memory and storage."""
        self._cancel_pending_save()
        self._sessions = {}
        self._active_session_id = None
        try:
            self.storage.remove_items(
                STORAGE_KEYS["sessions"],
                STORAGE_KEYS["active_session"],
                STORAGE_KEYS["last_sync"],
            )
        except StorageError as e:
            logger.error("Failed to clear session storage: %s", e)

    def cleanup_old_sessions(self, max_age_days: int = 30) -> int:
        """Drop inactive sessions not updated within ``max_age_days``."""
        cutoff = _utcnow() - timedelta(days=max_age_days)
        sessions = {
            sid: s for sid, s in self._sessions.items()
            if s.updated_at >= cutoff or sid == self._active_session_id
        }
        removed = len(self._sessions) - len(sessions)
        if removed:
            self._commit(sessions, self._active_session_id)
            logger.info("Removed %d stale chat sessions", removed)
        return removed

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    def add_message(self, message: Dict[str, Any]) -> Optional[str]:
        """
        Append a message to the active session.

        Args:
            message: ``{"content": str, "isUser": bool}``

        Returns:
            The new message id, or None when the message is malformed or
            there is no active session
        """
        if not isinstance(message, dict):
            logger.error("Invalid message format: %r", message)
            return None

        content = message.get("content")
        is_user = message.get("isUser", message.get("is_user"))
        if not isinstance(content, str) or not isinstance(is_user, bool):
            logger.error("Invalid message format: %r", message)
            return None

        active = self.active_session
        if active is None:
            logger.warning("No active session to add message to")
            return None

        new_message = ChatMessage(id=_new_id(), content=content, is_user=is_user)

        messages = active.messages + [new_message]
        limit = self.config.max_messages_per_session
        if len(messages) > limit:
            messages = messages[-limit:]

        title = active.title
        if active.message_count == 0 and is_user and content.strip():
            title = self._derive_title(content)

        updated = active.model_copy(update={
            "messages": messages,
            "message_count": len(messages),
            "title": title,
            "updated_at": _utcnow(),
        })
        sessions = dict(self._sessions)
        sessions[active.id] = updated
        self._commit(sessions, self._active_session_id)
        return new_message.id

    def _derive_title(self, content: str) -> str:
        limit = self.config.title_max_length
        return content[:limit] + ("..." if len(content) > limit else "")

    def update_message(self, message_id: str, content: str) -> bool:
        """Replace a message's content in the active session (streaming updates)."""
        if not message_id or not isinstance(content, str):
            logger.warning("Invalid update_message parameters: %r", message_id)
            return False

        active = self.active_session
        if active is None:
            return False

        found = False
        messages = []
        for msg in active.messages:
            if msg.id == message_id:
                msg = msg.model_copy(update={"content": content})
                found = True
            messages.append(msg)
        if not found:
            return False

        sessions = dict(self._sessions)
        sessions[active.id] = active.model_copy(update={
            "messages": messages,
            "updated_at": _utcnow(),
        })
        self._commit(sessions, self._active_session_id)
        return True

    # -------------------------------------------------------------------------
    # Utilities
    # -------------------------------------------------------------------------

    def search(self, query: str) -> List[ChatSession]:
        """Sessions whose title or any message contains ``query`` (case-insensitive)."""
        needle = query.lower().strip()
        if not needle:
            return []
        return [
            s for s in self.list_sessions()
            if needle in s.title.lower()
            or any(needle in m.content.lower() for m in s.messages)
        ]

    def get_recent(self, limit: int = 10) -> List[ChatSession]:
        return self.list_sessions()[:limit]

    def export_sessions(self) -> List[Dict[str, Any]]:
        """Sessions as JSON-ready dicts, most recent first."""
        return [s.to_storage() for s in self.list_sessions()]

    def import_sessions(self, data: List[Dict[str, Any]]) -> int:
        """
        Merge exported sessions into the store.

        Invalid entries are skipped. Imported sessions are inactive and
        existing ids are overwritten. The session cap is enforced afterwards.

        Returns:
            Number of sessions imported
        """
        sessions = dict(self._sessions)
        imported = 0
        for raw in data:
            try:
                session = validate_and_migrate_session(raw)
            except SessionValidationError as e:
                logger.warning("Skipping invalid imported session: %s", e)
                continue
            if session.id == self._active_session_id:
                session = session.model_copy(update={"is_active": True})
            else:
                session = session.model_copy(update={"is_active": False})
            sessions[session.id] = session
            imported += 1

        if len(sessions) > self.config.max_sessions:
            ordered = sorted(sessions.values(), key=lambda s: s.updated_at, reverse=True)
            keep = ordered[:self.config.max_sessions]
            active = self._sessions.get(self._active_session_id) if self._active_session_id else None
            if active is not None and active not in keep:
                keep = keep[:-1] + [sessions[active.id]]
            sessions = {s.id: s for s in keep}

        if imported:
            self._commit(sessions, self._active_session_id)
        return imported

    def stats(self) -> Dict[str, Any]:
        return {
            "total_sessions": len(self._sessions),
            "total_messages": sum(s.message_count for s in self._sessions.values()),
            "active_session_id": self._active_session_id,
            "has_active_session": self.active_session is not None,
        }
