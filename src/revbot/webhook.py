"""HTTP surface: the inbound webhook endpoint and a health check.

The response code only says whether the request was accepted. Delivery
happens afterwards on the event loop and its outcome is never reported
back to the webhook sender.
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from revbot.config import Config
from revbot.errors import MalformedPayload, Unauthorized
from revbot.gitlab import GitlabPlatform
from revbot.interfaces import ChatProvider, HostingPlatform
from revbot.relay import Relay, build_relay
from revbot.webex import WebexClient

logger = logging.getLogger(__name__)


def _status(status_code: int, status: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"status": status})


def create_app(
    config: Config,
    *,
    platform: HostingPlatform | None = None,
    provider: ChatProvider | None = None,
    relay: Relay | None = None,
) -> FastAPI:
    """Create the FastAPI app serving ``POST <webhook_path>`` and ``GET /health``.

    Collaborators default to GitLab and Webex built from ``config``; tests
    pass their own.
    """
    if platform is None:
        platform = GitlabPlatform(config.gitlab.webhook_token)
    owned_client = None
    if provider is None and relay is None:
        owned_client = WebexClient(config.webex)
        provider = owned_client
    if relay is None:
        relay = build_relay(config, provider)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        logger.info("Listening for webhooks on %s", config.gitlab.webhook_path)
        yield
        logger.info("Shutting down; draining notifications")
        await relay.close()
        if owned_client is not None:
            owned_client.close()

    app = FastAPI(title="revbot", docs_url=None, redoc_url=None, lifespan=lifespan)
    app.state.relay = relay

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post(config.gitlab.webhook_path)
    async def receive_webhook(request: Request) -> JSONResponse:
        body = await request.body()

        # -- authenticity (before looking at the body) -----------------------
        try:
            platform.verify(request.headers, body)
        except Unauthorized as exc:
            logger.warning("Rejected webhook: %s", exc)
            return _status(401, "unauthorized")

        # -- event type --------------------------------------------------------
        event_type = platform.event_type(request.headers)
        if not platform.is_supported(event_type):
            logger.debug("Ignored webhook of type %r", event_type)
            return _status(200, "ignored")

        # -- classification ----------------------------------------------------
        try:
            try:
                payload = json.loads(body)
            except (ValueError, RecursionError):
                raise MalformedPayload(event_type, "body is not valid JSON")
            event = platform.classify(event_type, payload)
        except MalformedPayload as exc:
            logger.warning("Malformed %r webhook: %s", exc.event_type, exc.reason)
            return _status(400, "malformed")

        if event is None:
            return _status(200, "ignored")

        relay.accept(event)
        return _status(202, "accepted")

    return app
