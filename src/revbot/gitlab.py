"""GitLab webhook verification and event classification.

Turns raw ``Merge Request Hook`` and ``Note Hook`` payloads into
:class:`ReviewEvent` instances. Classification is a pure function of the
payload: no network access and no shared state.
"""

from __future__ import annotations

import hmac
import logging
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from typing import Any

from revbot.errors import MalformedPayload, Unauthorized
from revbot.models import EventKind, ReviewEvent

logger = logging.getLogger(__name__)

EVENT_HEADER = "X-Gitlab-Event"
TOKEN_HEADER = "X-Gitlab-Token"

MERGE_REQUEST_HOOK = "Merge Request Hook"
NOTE_HOOK = "Note Hook"

SUPPORTED_EVENT_TYPES = frozenset({MERGE_REQUEST_HOOK, NOTE_HOOK})

# Merge request actions mapped to the kind of notification they produce.
_REQUEST_ACTIONS = frozenset({"open", "reopen"})
_ACTION_KINDS = {
    "approved": EventKind.APPROVAL,
    "approval": EventKind.APPROVAL,
    "merge": EventKind.MERGE,
}

# GitLab hides emails it is not allowed to share behind this placeholder.
_REDACTED_EMAIL = "[redacted]"

_TIME_FORMATS = (
    "%Y-%m-%d %H:%M:%S %z",
    "%Y-%m-%d %H:%M:%S UTC",
)


def _header(headers: Mapping[str, str], name: str) -> str:
    """Case-insensitive header lookup that works on plain dicts too."""
    value = headers.get(name)
    if value is None:
        lowered = name.lower()
        for key, candidate in headers.items():
            if key.lower() == lowered:
                value = candidate
                break
    return value or ""


def parse_timestamp(value: Any) -> datetime | None:
    """Parse any of GitLab's timestamp spellings into an aware datetime."""
    if not isinstance(value, str) or not value.strip():
        return None
    value = value.strip()
    for fmt in _TIME_FORMATS:
        try:
            parsed = datetime.strptime(value, fmt)
        except ValueError:
            continue
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def normalize_email(value: Any) -> str | None:
    """Return a lowercased email, or ``None`` for missing or redacted values."""
    if not isinstance(value, str):
        return None
    email = value.strip().lower()
    if not email or email == _REDACTED_EMAIL or "@" not in email:
        return None
    return email


def _user_emails(users: Any, actor_id: Any = None) -> list[str]:
    """Extract usable emails from a list of GitLab user objects, minus the actor."""
    if not isinstance(users, list):
        return []
    emails = []
    for user in users:
        if not isinstance(user, dict):
            continue
        if actor_id is not None and user.get("id") == actor_id:
            continue
        email = normalize_email(user.get("email"))
        if email is not None:
            emails.append(email)
    return emails


def _added_users(change: Any, actor_id: Any = None) -> list[str]:
    """Emails present in ``current`` but not in ``previous`` of a change entry."""
    if not isinstance(change, dict):
        return []
    previous_ids = set()
    previous_emails = set()
    for user in change.get("previous") or []:
        if isinstance(user, dict):
            previous_ids.add(user.get("id"))
            previous_emails.add(normalize_email(user.get("email")))
    added = []
    for user in change.get("current") or []:
        if not isinstance(user, dict):
            continue
        # GitLab users are identified by id; fall back to email when absent.
        if user.get("id") is not None and user.get("id") in previous_ids:
            continue
        if actor_id is not None and user.get("id") == actor_id:
            continue
        email = normalize_email(user.get("email"))
        if email is None or email in previous_emails:
            continue
        added.append(email)
    return added


def _actor_id(payload: dict) -> Any:
    """GitLab id of the user who triggered the event, if present."""
    user = payload.get("user")
    if not isinstance(user, dict):
        return None
    return user.get("id")


def _recipients(emails: Iterable[str], actor_email: str) -> frozenset[str]:
    """Distinct emails, minus whoever triggered the event."""
    return frozenset(email for email in emails if email != actor_email)


class GitlabPlatform:
    """Verifies and classifies webhooks sent by a GitLab instance."""

    def __init__(self, webhook_token: str) -> None:
        self._webhook_token = webhook_token

    # -- request checks ------------------------------------------------------

    def verify(self, headers: Mapping[str, str], body: bytes) -> None:
        """Raise :class:`Unauthorized` unless ``X-Gitlab-Token`` matches.

        GitLab sends the shared secret verbatim; the body is not signed.
        """
        token = _header(headers, TOKEN_HEADER)
        if not token:
            raise Unauthorized("missing token header")
        if not hmac.compare_digest(token.encode("utf-8"), self._webhook_token.encode("utf-8")):
            raise Unauthorized("token mismatch")

    def event_type(self, headers: Mapping[str, str]) -> str:
        return _header(headers, EVENT_HEADER).strip()

    def is_supported(self, event_type: str) -> bool:
        return event_type in SUPPORTED_EVENT_TYPES

    # -- classification ------------------------------------------------------

    def classify(self, event_type: str, payload: Any) -> ReviewEvent | None:
        """Convert a decoded webhook body into a :class:`ReviewEvent`.

        Returns ``None`` when the event is expected traffic that warrants no
        notification (unsupported type, irrelevant action, nobody to notify).

        Raises
        ------
        MalformedPayload
            The type is supported but the body lacks the fields we need.
        """
        if not self.is_supported(event_type):
            logger.debug("Ignored event type %r", event_type)
            return None

        if not isinstance(payload, dict):
            raise MalformedPayload(event_type, "body is not a JSON object")

        if event_type == MERGE_REQUEST_HOOK:
            return self._classify_merge_request(event_type, payload)
        return self._classify_note(event_type, payload)

    def _classify_merge_request(self, event_type: str, payload: dict) -> ReviewEvent | None:
        attributes = self._section(event_type, payload, "object_attributes")
        actor_id = _actor_id(payload)
        action = attributes.get("action")
        if action is not None and not isinstance(action, str):
            raise MalformedPayload(event_type, "action is not a string")

        if action in _REQUEST_ACTIONS:
            kind = EventKind.REVIEW_REQUESTED
            candidates = _user_emails(payload.get("reviewers"), actor_id) + _user_emails(
                payload.get("assignees"), actor_id
            )
        elif action == "update":
            kind = EventKind.REVIEW_REQUESTED
            changes = payload.get("changes")
            if not isinstance(changes, dict):
                changes = {}
            candidates = _added_users(changes.get("reviewers"), actor_id) + _added_users(
                changes.get("assignees"), actor_id
            )
        elif action in _ACTION_KINDS:
            kind = _ACTION_KINDS[action]
            candidates = _user_emails(payload.get("reviewers"), actor_id) + _user_emails(
                payload.get("assignees"), actor_id
            )
        else:
            logger.debug("Ignored merge request action %r", action)
            return None

        return self._build_event(
            event_type,
            payload,
            kind=kind,
            merge_request=attributes,
            timestamp=attributes.get("updated_at") or attributes.get("created_at"),
            candidates=candidates,
        )

    def _classify_note(self, event_type: str, payload: dict) -> ReviewEvent | None:
        attributes = self._section(event_type, payload, "object_attributes")
        actor_id = _actor_id(payload)
        if attributes.get("noteable_type") != "MergeRequest":
            logger.debug("Ignored note on %r", attributes.get("noteable_type"))
            return None

        merge_request = payload.get("merge_request")
        if not isinstance(merge_request, dict):
            raise MalformedPayload(event_type, "missing merge_request")

        candidates = []
        for source in (payload, merge_request):
            candidates += _user_emails(source.get("reviewers"), actor_id)
            candidates += _user_emails(source.get("assignees"), actor_id)

        return self._build_event(
            event_type,
            payload,
            kind=EventKind.COMMENT_ADDED,
            merge_request=merge_request,
            timestamp=attributes.get("created_at") or attributes.get("updated_at"),
            candidates=candidates,
            url=attributes.get("url"),
        )

    # -- helpers -------------------------------------------------------------

    @staticmethod
    def _section(event_type: str, payload: dict, key: str) -> dict:
        section = payload.get(key)
        if not isinstance(section, dict):
            raise MalformedPayload(event_type, f"missing {key}")
        return section

    def _build_event(
        self,
        event_type: str,
        payload: dict,
        *,
        kind: EventKind,
        merge_request: dict,
        timestamp: Any,
        candidates: list[str],
        url: Any = None,
    ) -> ReviewEvent | None:
        project = self._section(event_type, payload, "project")
        user = self._section(event_type, payload, "user")

        iid = merge_request.get("iid")
        if not isinstance(iid, int) or isinstance(iid, bool):
            raise MalformedPayload(event_type, "merge request iid is not an integer")

        path = project.get("path_with_namespace")
        if not isinstance(path, str) or not path:
            raise MalformedPayload(event_type, "missing project.path_with_namespace")

        occurred_at = parse_timestamp(timestamp)
        if occurred_at is None:
            raise MalformedPayload(event_type, "missing or unparseable timestamp")

        change_url = url or merge_request.get("url") or merge_request.get("web_url")
        if not isinstance(change_url, str) or not change_url:
            raise MalformedPayload(event_type, "missing merge request url")

        actor_email = normalize_email(user.get("email")) or ""
        recipients = _recipients(candidates, actor_email)
        if not recipients:
            logger.debug("No one to notify for %s !%s (%s)", path, iid, kind.value)
            return None

        return ReviewEvent(
            event_kind=kind,
            project_identifier=path,
            change_identifier=f"{path}!{iid}",
            change_url=change_url,
            actor_email=actor_email,
            recipients=recipients,
            occurred_at=occurred_at,
            change_title=str(merge_request.get("title") or ""),
            project_name=str(project.get("name") or path),
            project_url=str(project.get("web_url") or ""),
            actor_name=str(user.get("username") or user.get("name") or ""),
        )
