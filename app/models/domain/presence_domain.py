from datetime import UTC, datetime

from pydantic import BaseModel, Field


class Connection(BaseModel):
    """One live transport session. Never persisted."""

    connection_id: str
    user_id: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class PresenceRecord(BaseModel):
    """
    Last known heartbeat of a user.

    Online-ness is derived from the heartbeat age, there is no stored flag
    that needs invalidating.
    """

    user_id: str
    last_heartbeat: float  # epoch seconds
    connection_id: str | None = None

    def is_online(self, now: float, ttl_seconds: float) -> bool:
        return now - self.last_heartbeat <= ttl_seconds

    def expires_at(self, ttl_seconds: float) -> float:
        return self.last_heartbeat + ttl_seconds
