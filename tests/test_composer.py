"""Tests for notification message composition."""

from datetime import datetime, timezone

import pytest

from revbot.composer import compose, describe
from revbot.models import EventKind, ReviewEvent


def make_event(**overrides) -> ReviewEvent:
    """Create a ReviewEvent with sensible defaults, overriding specific fields."""
    defaults = dict(
        event_kind=EventKind.REVIEW_REQUESTED,
        project_identifier="hds-/mr-test",
        change_identifier="MR-42",
        change_url="https://gitlab.com/hds-/mr-test/-/merge_requests/42",
        actor_email="bob@example.com",
        recipients=frozenset({"alice@example.com"}),
        occurred_at=datetime(2021, 9, 6, tzinfo=timezone.utc),
        change_title="Fail pipeline",
        project_name="mr-test",
        project_url="https://gitlab.com/hds-/mr-test",
        actor_name="bob",
    )
    defaults.update(overrides)
    return ReviewEvent(**defaults)


class TestCompose:
    def test_review_requested_layout(self):
        body = compose(make_event(), "alice@example.com")
        assert body == (
            "[MR-42 Fail pipeline](https://gitlab.com/hds-/mr-test/-/merge_requests/42) "
            "([mr-test](https://gitlab.com/hds-/mr-test)) by @bob\n"
            + describe(EventKind.REVIEW_REQUESTED)
        )

    @pytest.mark.parametrize("kind", list(EventKind))
    def test_every_kind_mentions_change_and_link(self, kind):
        event = make_event(event_kind=kind)
        body = compose(event, "alice@example.com")
        assert "MR-42" in body
        assert event.change_url in body
        assert body.endswith(describe(kind))

    @pytest.mark.parametrize(
        "kind, phrase",
        [
            (EventKind.REVIEW_REQUESTED, "Review requested"),
            (EventKind.COMMENT_ADDED, "New comment"),
            (EventKind.APPROVAL, "Approved"),
            (EventKind.MERGE, "Merged"),
        ],
    )
    def test_descriptions(self, kind, phrase):
        assert phrase in describe(kind)

    def test_descriptions_are_distinct(self):
        assert len({describe(kind) for kind in EventKind}) == len(EventKind)

    def test_without_project_url(self):
        body = compose(make_event(project_url=""), "alice@example.com")
        assert "(mr-test)" in body

    def test_without_project_name_falls_back_to_identifier(self):
        body = compose(make_event(project_url="", project_name=""), "alice@example.com")
        assert "(hds-/mr-test)" in body

    def test_without_actor(self):
        body = compose(make_event(actor_name=""), "alice@example.com")
        assert " by @" not in body

    def test_without_title(self):
        body = compose(make_event(change_title=""), "alice@example.com")
        assert body.startswith("[MR-42](")

    def test_brackets_in_title_escaped(self):
        body = compose(make_event(change_title="[WIP] thing"), "alice@example.com")
        assert "\\[WIP\\] thing" in body

    def test_recipient_email_not_in_body(self):
        assert "alice@example.com" not in compose(make_event(), "alice@example.com")

    def test_is_pure(self):
        event = make_event()
        assert compose(event, "a@example.com") == compose(event, "a@example.com")
