"""Markdown message bodies for each kind of review event."""

from revbot.models import EventKind, ReviewEvent

_DESCRIPTIONS = {
    EventKind.REVIEW_REQUESTED: "👀 Review requested from you",
    EventKind.COMMENT_ADDED: "💬 New comment",
    EventKind.APPROVAL: "✅ Approved",
    EventKind.MERGE: "🎉 Merged",
}


def _escape(text: str) -> str:
    """Keep titles from breaking the surrounding markdown link syntax."""
    return text.replace("[", "\\[").replace("]", "\\]")


def describe(kind: EventKind) -> str:
    return _DESCRIPTIONS[kind]


def compose(event: ReviewEvent, recipient_email: str) -> str:
    """Build the markdown body sent to ``recipient_email`` for ``event``.

    The body is addressed to the recipient already, so their email is not
    repeated in it.

    Example output::

        [group/project!42 Fix login](https://...) ([project](https://...)) by @alice
        👀 Review requested from you
    """
    title = f"{event.change_identifier} {_escape(event.change_title)}".rstrip()
    change = f"[{title}]({event.change_url})"

    if event.project_url:
        project = f"([{_escape(event.project_name)}]({event.project_url}))"
    else:
        project = f"({_escape(event.project_name or event.project_identifier)})"

    parts = [change, project]
    if event.actor_name:
        parts.append(f"by @{event.actor_name}")

    return " ".join(parts) + "\n" + describe(event.event_kind)
