"""Webhook forwarding for promoted security alerts.

Supports Discord and Slack incoming webhooks plus a generic JSON payload.
Delivery is best effort with a short timeout so a slow receiver never holds up
the event log.
"""

import json
import logging
from datetime import UTC, datetime

import httpx

from tuneportal.core.config import settings

logger = logging.getLogger(__name__)

_WEBHOOK_TIMEOUT = 5.0
_DETAILS_PREVIEW_CHARS = 1500

_SEVERITY_PREFIX = {
    "info": "[INFO]",
    "warning": "[WARNING]",
    "error": "[ERROR]",
    "critical": "[CRITICAL]",
}


async def send_alert(
    title: str,
    message: str,
    severity: str = "warning",
    details: dict | None = None,
) -> bool:
    """Post an alert to ``settings.alert_webhook_url``.

    Returns True when the receiver accepted it. Never raises.
    """
    webhook_url = settings.alert_webhook_url
    if not webhook_url:
        return False

    payload = build_payload(title, message, severity, details, webhook_url)

    try:
        async with httpx.AsyncClient(timeout=_WEBHOOK_TIMEOUT) as client:
            response = await client.post(webhook_url, json=payload)
    except httpx.HTTPError as e:
        logger.warning("Webhook alert failed: %s", e)
        return False

    if response.status_code >= 400:
        logger.warning("Webhook alert failed: HTTP %d", response.status_code)
        return False
    return True


def build_payload(
    title: str,
    message: str,
    severity: str,
    details: dict | None,
    webhook_url: str,
) -> dict:
    """Shape the payload for the receiving service."""
    prefix = _SEVERITY_PREFIX.get(severity, "[ALERT]")
    details_text = json.dumps(details, indent=2, default=str)[:_DETAILS_PREVIEW_CHARS] if details else ""

    if "discord.com/api/webhooks" in webhook_url:
        content = f"{prefix} **{title}**\n{message}"
        if details_text:
            content += f"\n```json\n{details_text}\n```"
        return {"content": content}

    if "hooks.slack.com" in webhook_url:
        text = f"{prefix} *{title}*\n{message}"
        if details_text:
            text += f"\n```{details_text}```"
        return {"text": text}

    return {
        "title": title,
        "message": message,
        "severity": severity,
        "timestamp": datetime.now(UTC).isoformat(),
        "details": details or {},
        "source": "tuneportal",
    }
