"""Webex REST client: people lookup by email and direct messages."""

import logging

import requests

from revbot.config import WebexConfig
from revbot.errors import PermanentError, TransientError
from revbot.redaction import fingerprint

logger = logging.getLogger(__name__)


def _retry_after(resp: requests.Response) -> float | None:
    """Parse a ``Retry-After`` header given in seconds."""
    value = resp.headers.get("Retry-After")
    if value is None:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return max(0.0, seconds)


def _check_status(resp: requests.Response, operation: str) -> None:
    """Map a non-2xx response onto TransientError or PermanentError."""
    status = resp.status_code
    if 200 <= status < 300:
        return
    # Webex throttles with 423 as well as 429; both may carry Retry-After.
    if status in (408, 423, 429):
        raise TransientError(f"{operation}: throttled with {status}", retry_after=_retry_after(resp))
    if status >= 500:
        raise TransientError(f"{operation}: server error {status}")
    raise PermanentError(f"{operation}: rejected with {status}", status_code=status)


class WebexClient:
    """Talks to the Webex API with a bot access token.

    Both calls are blocking; the relay runs them in worker threads.
    """

    def __init__(self, config: WebexConfig, session: requests.Session | None = None) -> None:
        self._base_url = config.api_url.rstrip("/")
        self._timeout = config.timeout
        self._session = session or requests.Session()
        self._session.headers.update({"Authorization": f"Bearer {config.access_token}"})

    def close(self) -> None:
        self._session.close()

    def _request(self, method: str, path: str, operation: str, **kwargs) -> requests.Response:
        try:
            resp = self._session.request(
                method, f"{self._base_url}{path}", timeout=self._timeout, **kwargs
            )
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise TransientError(f"{operation}: {type(exc).__name__}") from exc
        _check_status(resp, operation)
        return resp

    def lookup(self, email: str) -> str | None:
        """Return the Webex person id registered for ``email``, or ``None``."""
        resp = self._request("GET", "/people", "people lookup", params={"email": email})
        try:
            items = resp.json()["items"]
        except (KeyError, TypeError, ValueError) as exc:
            raise TransientError(f"people lookup: unexpected response: {exc}") from exc

        if not items:
            logger.debug("No Webex account for %s", fingerprint(email))
            return None

        try:
            return str(items[0]["id"])
        except (KeyError, TypeError, IndexError) as exc:
            raise TransientError(f"people lookup: unexpected response: {exc}") from exc

    def send(self, account_id: str, body: str) -> None:
        """Send a markdown direct message to a Webex person."""
        self._request(
            "POST",
            "/messages",
            "send message",
            json={"toPersonId": account_id, "markdown": body},
        )
        logger.debug("Message delivered to %s (%d chars)", account_id, len(body))
