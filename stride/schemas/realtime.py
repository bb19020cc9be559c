"""
Wire schemas for realtime channel events.

None of these are persisted: they are the payloads carried by broadcast,
presence and row-change events on realtime topics.
"""

import time
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


EventType = Literal["broadcast", "presence", "postgres_changes"]
ChangeAction = Literal["INSERT", "UPDATE", "DELETE"]


class RealtimeEvent(BaseModel):
    """Envelope delivered to every subscriber of a topic."""

    topic: str
    type: EventType = "broadcast"
    event: str
    payload: Dict[str, Any] = Field(default_factory=dict)


class VoteUpdate(BaseModel):
    """
    One vote change on a post or comment.

    ``previous_vote_type`` is only present when the publisher knows the
    prior value (an UPDATE carrying the old row).
    """

    id: str
    target_type: Literal["post", "comment"]
    target_id: str
    user_id: str
    vote_type: int = 0
    action: ChangeAction
    previous_vote_type: Optional[int] = None

    @classmethod
    def from_change(cls, payload: Dict[str, Any], target_type: str) -> "VoteUpdate":
        """
        Build an update from a row-change payload.

        The payload carries ``eventType`` plus ``new`` and/or ``old`` rows.
        """
        target_field = "post_id" if target_type == "post" else "comment_id"
        new_row = payload.get("new") or {}
        old_row = payload.get("old") or {}
        row = new_row or old_row
        action = payload.get("eventType") or payload.get("action")

        previous = None
        if action == "UPDATE" and old_row.get("vote_type") is not None:
            previous = old_row["vote_type"]

        return cls(
            id=str(row.get("id", "")),
            target_type=target_type,
            target_id=str(row.get(target_field, "")),
            user_id=str(row.get("user_id", "")),
            vote_type=row.get("vote_type") or 0,
            action=action,
            previous_vote_type=previous,
        )


class TypingEvent(BaseModel):
    """Broadcast-only typing indicator."""

    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., alias="userId")
    username: str = "Unknown"
    is_typing: bool = Field(..., alias="typing")
    timestamp: float = Field(default_factory=time.time)


class OnlineUser(BaseModel):
    """Entry of the presence online-set."""

    user_id: str
    username: str = "Unknown"
    last_seen: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
