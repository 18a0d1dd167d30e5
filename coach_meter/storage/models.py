"""
Data models for storage layer.

Defines database entities and data structures.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Union


class CoachType(Enum):
    """Category of coaching conversation that triggered a model call."""
    INNER_CHILD = "inner_child"
    SHADOW_SELF = "shadow_self"
    HIGHER_SELF = "higher_self"
    INTEGRATION = "integration"
    OTHER = "other"  # Any tag not known to this version

    @classmethod
    def parse(cls, value: Union["CoachType", str, None]) -> "CoachType":
        """Map a free-form category tag onto a known coach type."""
        if isinstance(value, cls):
            return value
        if not value:
            return cls.OTHER
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.OTHER


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_utc(value: datetime) -> datetime:
    """Normalize a datetime to aware UTC. Naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _check_tokens(prompt_tokens: int, completion_tokens: int, total_tokens: int) -> None:
    if prompt_tokens < 0 or completion_tokens < 0:
        raise ValueError("token counts cannot be negative")
    if total_tokens != prompt_tokens + completion_tokens:
        raise ValueError(
            f"total_tokens ({total_tokens}) must equal prompt_tokens + completion_tokens "
            f"({prompt_tokens + completion_tokens})"
        )


@dataclass(frozen=True)
class UsageData:
    """Token usage reported by the model provider for a single call.

    This is what the chat dispatcher hands to the recorder. ``total_tokens``
    is derived when omitted; ``model`` falls back to the default pricing
    model when omitted.
    """
    user_id: int
    coach_type: Union[CoachType, str]
    prompt_tokens: int
    completion_tokens: int
    total_tokens: Optional[int] = None
    model: Optional[str] = None
    conversation_id: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, "coach_type", CoachType.parse(self.coach_type))
        if self.total_tokens is None:
            object.__setattr__(
                self, "total_tokens", self.prompt_tokens + self.completion_tokens
            )
        _check_tokens(self.prompt_tokens, self.completion_tokens, self.total_tokens)


@dataclass(frozen=True)
class UsageEvent:
    """Immutable record of one metered model call.

    Append-only events that create an auditable ledger of token usage.
    Once written, these records must never be modified.
    """
    user_id: int
    coach_type: CoachType
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    cost_cents: int
    model: str
    created_at: datetime
    conversation_id: Optional[int] = None
    id: Optional[int] = None

    def __post_init__(self):
        """Validate the ledger invariants."""
        _check_tokens(self.prompt_tokens, self.completion_tokens, self.total_tokens)
        if self.cost_cents < 0:
            raise ValueError("cost_cents cannot be negative")

    @property
    def cost_dollars(self) -> float:
        return self.cost_cents / 100


@dataclass
class QuotaState:
    """Monthly quota bookkeeping for one user."""
    user_id: int
    monthly_quota: int
    current_usage: int
    last_reset_date: datetime
    quota_reset_day: int
    is_active: bool = True
    updated_at: Optional[datetime] = None

    @property
    def remaining(self) -> int:
        return max(0, self.monthly_quota - self.current_usage)


@dataclass(frozen=True)
class RegisteredUser:
    """A user known to the host application."""
    user_id: int
    username: str
    created_at: Optional[datetime] = None
