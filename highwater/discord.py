from __future__ import annotations

import logging
import os
import time

import requests

logger = logging.getLogger(__name__)

DISCORD_MAX_CONTENT = 2000


def get_webhook_url() -> str:
    return (os.getenv("DISCORD_WEBHOOK_URL") or "").strip()


def send_webhook(content: str, *, webhook_url: str | None = None, attempts: int = 3) -> bool:
    target = (webhook_url if webhook_url is not None else get_webhook_url()).strip()
    if not target:
        logger.debug("Discord webhook missing; skipping alert send")
        return False

    body = str(content or "")
    if len(body) > DISCORD_MAX_CONTENT:
        body = body[: DISCORD_MAX_CONTENT - 3] + "..."

    attempts = max(int(attempts), 1)
    last_err: Exception | None = None
    for attempt in range(1, attempts + 1):
        try:
            response = requests.post(target, json={"content": body}, timeout=8)
            if response.status_code < 300:
                return True
            last_err = RuntimeError(f"Discord returned HTTP {response.status_code}")
        except requests.RequestException as exc:
            last_err = exc

        if attempt < attempts:
            time.sleep(0.4 * (2 ** (attempt - 1)))

    if last_err is not None:
        logger.error("Discord webhook send failed: %s", last_err)
    return False
