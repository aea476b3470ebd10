# mayday/infra/http_client.py
"""
aiohttp session used by the push carrier.

One session per process, created on first send and closed by the host
during shutdown. A closed session is replaced on the next call, so a
carrier never holds a stale one.
"""
from __future__ import annotations

import aiohttp

from mayday.config import settings
from mayday.infra.logging_config import get_logger

logger = get_logger(__name__)

_push_session: aiohttp.ClientSession | None = None


def get_push_session() -> aiohttp.ClientSession:
    global _push_session

    if _push_session is None or _push_session.closed:
        _push_session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=settings.push_timeout_seconds, connect=3),
            connector=aiohttp.TCPConnector(limit=settings.push_pool_limit, enable_cleanup_closed=True),
            headers={"User-Agent": "mayday-dispatch"},
        )
        logger.debug(f"Push session created (limit={settings.push_pool_limit})")
    return _push_session


async def close_push_session() -> None:
    """Close the push session if one was opened. Safe to call more than once."""
    global _push_session

    session, _push_session = _push_session, None
    if session is not None and not session.closed:
        await session.close()
        logger.debug("Push session closed")
