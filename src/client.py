"""Telegram client factory for the Telethon-backed channel.

The channel only needs a client when a ``telegram`` channel is configured,
so the client is built lazily and its lifecycle (connect on first send,
disconnect at shutdown) stays explicit.
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv
from telethon import TelegramClient


def telethon_configured() -> bool:
    load_dotenv()
    return bool(os.getenv("API_ID") and os.getenv("API_HASH"))


def build_client() -> TelegramClient:
    """Create a Telethon client from environment variables.

    We read API_ID/API_HASH via python-dotenv to keep secrets out of the repo.
    The session name defaults to "beacon" to reuse a local .session file that
    must already be authorized.
    """

    load_dotenv()

    api_id = os.getenv("API_ID")
    api_hash = os.getenv("API_HASH")
    session_name = os.getenv("SESSION_NAME", "beacon")

    # Fail fast on missing credentials to avoid an ambiguous login prompt.
    if not api_id or not api_hash:
        raise RuntimeError("Missing API_ID or API_HASH in environment")

    logging.getLogger(__name__).info("Initializing Telegram client")

    return TelegramClient(session_name, int(api_id), api_hash)
