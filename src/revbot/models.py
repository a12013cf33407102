"""Shared data structures used across all components."""

import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class EventKind(Enum):
    REVIEW_REQUESTED = "review-requested"
    COMMENT_ADDED = "comment-added"
    APPROVAL = "approval"
    MERGE = "merge"


class DeliveryState(Enum):
    PENDING = "pending"
    SENDING = "sending"
    RETRYING = "retrying"
    SENT = "sent"
    FAILED = "failed"


TERMINAL_STATES = frozenset({DeliveryState.SENT, DeliveryState.FAILED})


@dataclass(frozen=True)
class ReviewEvent:
    event_kind: EventKind
    project_identifier: str  # e.g. "group/project"
    change_identifier: str  # e.g. "group/project!42"
    change_url: str
    actor_email: str
    recipients: frozenset[str]  # never contains actor_email
    occurred_at: datetime  # from the source event, not receipt time
    change_title: str = ""
    project_name: str = ""
    project_url: str = ""
    actor_name: str = ""  # username shown in messages


@dataclass(frozen=True)
class ResolvedRecipient:
    email: str
    account_id: str
    resolved_at: float  # time.monotonic() of the lookup


def make_dedup_key(change_identifier: str, event_kind: EventKind, recipient_account_id: str) -> str:
    """Stable key naming a (change, kind, recipient) triple."""
    raw = "\x1f".join((change_identifier, event_kind.value, recipient_account_id))
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass
class DispatchTask:
    event_kind: EventKind
    change_identifier: str
    recipient_account_id: str
    message_body: str
    attempt_count: int = 0
    dedup_key: str = ""
    state: DeliveryState = DeliveryState.PENDING
    last_delay: float = 0.0  # most recent backoff delay, for monotonic growth
    history: list[DeliveryState] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.dedup_key:
            self.dedup_key = make_dedup_key(
                self.change_identifier, self.event_kind, self.recipient_account_id
            )

    def transition(self, state: DeliveryState) -> None:
        """Move to a new lifecycle state, refusing to leave a terminal one."""
        if self.state in TERMINAL_STATES:
            raise ValueError(f"task already {self.state.value}, cannot become {state.value}")
        self.history.append(self.state)
        self.state = state
