"""Shared notification formatting helpers.

Keeping formatting here prevents drift between channels and keeps messages
consistent regardless of delivery medium.
"""

from __future__ import annotations

import html
from typing import Any

from core.models import NotificationEvent

DIVIDER = "──────────────"


def format_source_label(event: NotificationEvent) -> str:
    """Return ``repository@branch (target)``, skipping empty parts."""

    label = event.repository or "unknown repository"
    if event.branch:
        label = f"{label}@{event.branch}"
    if event.target:
        label = f"{label} ({event.target})"
    return label


def _headline(event: NotificationEvent) -> str:
    return event.title or event.message.splitlines()[0]


def _timestamp(event: NotificationEvent) -> str:
    return event.metadata.timestamp.astimezone().strftime("%H:%M:%S %d-%m-%Y").strip()


def _format_plain(event: NotificationEvent) -> str:
    lines = [
        f"[{event.status.value.upper()}] {_headline(event)}",
        f"Source: {format_source_label(event)}",
        "",
        event.message,
    ]
    if event.details:
        lines.extend(["", event.details])
    if event.source_url:
        lines.extend(["", f"Link: {event.source_url}"])
    return "\n".join(lines)


def _format_markdown(event: NotificationEvent) -> str:
    """Create the Markdown body used by Telegram (Telethon) delivery."""

    def escape_md(value: str) -> str:
        for ch in r"*[`":
            value = value.replace(ch, f"\\{ch}")
        return value

    lines = [
        f"[{_timestamp(event)}]",
        f"**Status:** {event.status.value.upper()}",
        f"**Title:**  {escape_md(_headline(event))}",
        f"**Source:** {escape_md(format_source_label(event))}",
        DIVIDER,
        "",
        escape_md(event.message),
    ]
    if event.details:
        lines.extend(["", "**Details:**", escape_md(event.details)])
    if event.source_url:
        lines.extend(["", "**Link:**", event.source_url])
    lines.append(DIVIDER)
    return "\n".join(lines)


def _format_html(event: NotificationEvent) -> str:
    """Create the HTML body used by the Bot API channel."""

    parts = [
        f"[{html.escape(_timestamp(event))}]",
        f"<b>Status:</b> {event.status.value.upper()}",
        f"<b>Title:</b> {html.escape(_headline(event))}",
        f"<b>Source:</b> {html.escape(format_source_label(event))}",
        DIVIDER,
        "",
        html.escape(event.message),
    ]
    if event.details:
        parts.extend(["", "<b>Details:</b>", html.escape(event.details)])
    if event.source_url:
        safe_link = html.escape(event.source_url)
        parts.extend(["", "<b>Link:</b>", f"<a href=\"{safe_link}\">{safe_link}</a>"])
    parts.append(DIVIDER)
    return "\n".join(parts)


def format_notification(event: NotificationEvent, mode: str) -> str:
    """Return the notification formatted for the requested mode."""

    if mode == "plain":
        return _format_plain(event)
    if mode == "markdown":
        return _format_markdown(event)
    if mode == "html":
        return _format_html(event)
    raise ValueError(f"Unsupported notification format: {mode}")


def event_payload(event: NotificationEvent) -> dict[str, Any]:
    """Structured JSON form of an event for machine consumers."""

    return {
        "status": event.status.value,
        "title": event.title,
        "message": event.message,
        "details": event.details,
        "repository": event.repository,
        "branch": event.branch,
        "target": event.target,
        "workflow_url": event.source_url,
        "context": dict(event.context),
        "metadata": {
            "timestamp": event.metadata.timestamp.isoformat(),
            "requestId": event.metadata.request_id,
            "organizationId": event.metadata.organization_id,
            "userId": event.metadata.user_id,
            "source": event.metadata.source,
        },
    }
