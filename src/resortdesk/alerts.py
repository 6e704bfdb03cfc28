"""Operator alerts via ntfy when scheduled checks go wrong."""

import base64
import logging
from typing import TYPE_CHECKING

import httpx

if TYPE_CHECKING:
    from .config import Config

logger = logging.getLogger("resortdesk.alerts")


def send_alert(
    config: "Config",
    message: str,
    *,
    title: str | None = None,
    priority: int | None = None,
    tags: str | None = None,
) -> bool:
    """Push an alert to the configured ntfy topic. Returns True on success."""
    if not config.ntfy.enabled:
        return False

    topic = config.ntfy.topic
    if not topic:
        logger.warning("No ntfy topic configured for alerts")
        return False

    url = f"{config.ntfy.server_url.rstrip('/')}/{topic}"
    headers = {}
    if config.ntfy.token:
        headers["Authorization"] = f"Bearer {config.ntfy.token}"
    elif config.ntfy.username:
        credentials = base64.b64encode(
            f"{config.ntfy.username}:{config.ntfy.password}".encode()
        ).decode()
        headers["Authorization"] = f"Basic {credentials}"
    if title:
        headers["Title"] = title
    headers["Priority"] = str(priority if priority is not None else config.ntfy.priority)
    if tags:
        headers["Tags"] = tags

    try:
        response = httpx.post(url, content=message, headers=headers, timeout=10)
        response.raise_for_status()
        return True
    except Exception as e:
        logger.error("Failed to send ntfy alert: %s", e)
        return False
