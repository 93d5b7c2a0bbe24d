"""
Shared utilities for source adapters.
"""
import aiohttp
from typing import Optional
from contextlib import asynccontextmanager


@asynccontextmanager
async def get_session(session: Optional[aiohttp.ClientSession] = None):
    """Context manager for aiohttp session handling.

    If session is provided, yields it.
    If not, creates a new session and closes it after use.
    """
    if session is not None:
        yield session
    else:
        async with aiohttp.ClientSession() as new_session:
            yield new_session


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Seconds from a Retry-After header; HTTP-date values are ignored."""
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    return seconds if seconds >= 0 else None
