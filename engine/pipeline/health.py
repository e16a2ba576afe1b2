"""
HTTP health polling with a fixed retry budget.
"""
import asyncio
import time
from typing import Optional

import aiohttp

from utils.logger import get_logger

logger = get_logger(__name__)


class HealthPoller:
    """Polls an endpoint until it answers 2xx or the attempts run out"""

    def __init__(self, request_timeout: float = 5.0, verify_ssl: bool = True):
        self.request_timeout = request_timeout
        self.verify_ssl = verify_ssl
        self.last_attempts = 0

    async def poll(self, url: str, max_attempts: int, interval: float) -> bool:
        """
        Poll ``url`` with GET requests

        Args:
            url: endpoint to check
            max_attempts: total number of requests to make
            interval: fixed sleep between attempts, in seconds

        Returns:
            True on the first 2xx response, False once every attempt failed.
            Connection errors and non-2xx answers never raise.
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        timeout = aiohttp.ClientTimeout(total=self.request_timeout)
        connector = aiohttp.TCPConnector(ssl=self.verify_ssl)
        started = time.monotonic()
        self.last_attempts = 0

        async with aiohttp.ClientSession(timeout=timeout, connector=connector) as session:
            for attempt in range(1, max_attempts + 1):
                self.last_attempts = attempt
                status = await self._attempt(session, url)
                if status is not None and 200 <= status < 300:
                    logger.info(f"{url} healthy after {attempt} attempt(s) ({time.monotonic() - started:.1f}s)")
                    return True

                logger.info(f"Health check {attempt}/{max_attempts} for {url} failed"
                            + (f" (HTTP {status})" if status is not None else ""))
                if attempt < max_attempts:
                    await asyncio.sleep(interval)

        logger.warning(f"{url} not healthy after {max_attempts} attempts ({time.monotonic() - started:.1f}s)")
        return False

    async def _attempt(self, session: aiohttp.ClientSession, url: str) -> Optional[int]:
        try:
            async with session.get(url, allow_redirects=True) as response:
                return response.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug(f"Health check request to {url} failed: {e}")
            return None
