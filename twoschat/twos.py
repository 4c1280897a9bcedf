import asyncio
import logging

import aiohttp

from .constants import TWOS_EXPORT_URL
from .errors import TwosFetchError

logger = logging.getLogger("TwosChat")


async def fetch_twos_snapshot(
    user_id: str,
    token: str,
    *,
    url: str = TWOS_EXPORT_URL,
    timeout: float = 30,
) -> dict:
    """POST to the Twos export endpoint and return ``{"entries": [...], "posts": [...]}``."""
    body = {"user_id": user_id, "token": token, "page": 0}
    client_timeout = aiohttp.ClientTimeout(total=timeout)
    logger.info("Fetching data from Twos API (%s)", url)
    try:
        async with aiohttp.ClientSession(timeout=client_timeout) as session:
            async with session.post(
                url, json=body, headers={"Content-Type": "application/json"}
            ) as resp:
                if resp.status < 200 or resp.status >= 300:
                    logger.error("Twos API response not OK: %d %s", resp.status, resp.reason)
                    raise TwosFetchError("Failed to fetch data from Twos", status=resp.status)
                data = await resp.json(content_type=None)
    except aiohttp.ClientConnectorError as e:
        raise TwosFetchError(f"Cannot connect to Twos API: {e}") from e
    except asyncio.TimeoutError as e:
        raise TwosFetchError("Twos API request timed out") from e
    except ValueError as e:
        raise TwosFetchError(f"Twos API returned an unreadable body: {e}") from e
    except aiohttp.ClientError as e:
        raise TwosFetchError(f"Twos API request failed: {e}") from e

    if not isinstance(data, dict):
        raise TwosFetchError("Twos API returned an unexpected payload")

    snapshot = {
        "entries": list(data.get("entries") or []),
        "posts": list(data.get("posts") or []),
    }
    logger.debug(
        "Data received: entries=%d posts=%d", len(snapshot["entries"]), len(snapshot["posts"])
    )
    return snapshot
