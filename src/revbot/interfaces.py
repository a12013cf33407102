"""Capability interfaces implemented by each hosting platform and chat provider.

The relay only talks to these protocols, so adding a second platform or
provider means writing a new implementer rather than touching the pipeline.
"""

from collections.abc import Mapping
from typing import Any, Protocol

from revbot.models import ReviewEvent


class HostingPlatform(Protocol):
    def verify(self, headers: Mapping[str, str], body: bytes) -> None:
        """Raise ``Unauthorized`` unless the request carries the shared secret."""

    def event_type(self, headers: Mapping[str, str]) -> str:
        """Return the declared event type, or an empty string if absent."""

    def is_supported(self, event_type: str) -> bool:
        """Whether the declared type is one we classify at all."""

    def classify(self, event_type: str, payload: Any) -> ReviewEvent | None:
        """Turn a decoded payload into a ``ReviewEvent`` or ``None`` if not actionable.

        Must be pure: no network or state access. Raises ``MalformedPayload``
        for a supported type whose body cannot be interpreted.
        """


class ChatProvider(Protocol):
    def lookup(self, email: str) -> str | None:
        """Return the chat account id for an email, or ``None`` if there is none.

        Raises ``TransientError`` or ``PermanentError`` when the directory
        cannot answer.
        """

    def send(self, account_id: str, body: str) -> None:
        """Deliver a message. Raises ``TransientError`` or ``PermanentError``."""
