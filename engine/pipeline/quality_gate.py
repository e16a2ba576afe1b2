"""
Quality gate client for a SonarQube-compatible analysis server.

The scanner submits the analysis; this client only waits for the verdict.
"""
import asyncio
import time
from pathlib import Path
from typing import Any, Dict, Optional

import aiohttp

from .types import GateStatus
from utils.logger import get_logger

logger = get_logger(__name__)

PENDING_TASK_STATES = ("PENDING", "IN_PROGRESS")
FAILED_TASK_STATES = ("FAILED", "CANCELED")


def read_report_task(path: str) -> Dict[str, str]:
    """Parse the scanner's ``report-task.txt`` (key=value lines)."""
    values: Dict[str, str] = {}
    report = Path(path)
    if not report.exists():
        return values
    for line in report.read_text(encoding="utf-8").splitlines():
        if "=" not in line or line.lstrip().startswith("#"):
            continue
        key, value = line.split("=", 1)
        values[key.strip()] = value.strip()
    return values


class QualityGateClient:
    """Polls the analysis server until the gate has a verdict"""

    def __init__(self, server_url: str, token: str = "",
                 poll_interval: float = 5.0, request_timeout: float = 30.0):
        self.server_url = server_url.rstrip("/")
        self.token = token
        self.poll_interval = poll_interval
        self.request_timeout = request_timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _ensure_session(self):
        if self._session is None or self._session.closed:
            auth = aiohttp.BasicAuth(self.token, "") if self.token else None
            self._session = aiohttp.ClientSession(
                auth=auth,
                headers={"Accept": "application/json"},
                timeout=aiohttp.ClientTimeout(total=self.request_timeout),
            )

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()

    async def _get(self, endpoint: str, params: Dict[str, str]) -> Dict[str, Any]:
        await self._ensure_session()
        url = f"{self.server_url}/{endpoint.lstrip('/')}"
        async with self._session.get(url, params=params) as response:
            response.raise_for_status()
            return await response.json(content_type=None)

    async def await_gate(self, project_key: str, poll_timeout: float,
                         task_id: Optional[str] = None) -> GateStatus:
        """
        Wait for the quality gate verdict of the latest analysis

        Args:
            project_key: analysed project key
            poll_timeout: seconds to keep polling before giving up
            task_id: compute-engine task id from report-task.txt, if known

        Returns:
            GateStatus; TIMEOUT when no verdict arrived in time
        """
        deadline = time.monotonic() + poll_timeout
        try:
            return await asyncio.wait_for(
                self._poll(project_key, task_id, deadline),
                timeout=max(poll_timeout, 0.0),
            )
        except asyncio.TimeoutError:
            logger.error(f"Quality gate for {project_key} timed out after {poll_timeout} seconds")
            return GateStatus.TIMEOUT

    async def _poll(self, project_key: str, task_id: Optional[str], deadline: float) -> GateStatus:
        analysis_id = None
        if task_id:
            while True:
                try:
                    data = await self._get("api/ce/task", {"id": task_id})
                except (aiohttp.ClientError, ValueError) as e:
                    logger.warning(f"Quality gate task lookup failed, retrying: {e}")
                    await self._sleep_until_next(deadline)
                    continue

                task = data.get("task", {})
                state = task.get("status", "PENDING")
                if state in FAILED_TASK_STATES:
                    logger.error(f"Analysis task {task_id} ended with {state}")
                    return GateStatus.ERROR
                if state not in PENDING_TASK_STATES:
                    analysis_id = task.get("analysisId")
                    break
                logger.info(f"Analysis task {task_id} is {state}")
                await self._sleep_until_next(deadline)

        params = {"analysisId": analysis_id} if analysis_id else {"projectKey": project_key}
        while True:
            try:
                data = await self._get("api/qualitygates/project_status", params)
            except (aiohttp.ClientError, ValueError) as e:
                logger.warning(f"Quality gate status lookup failed, retrying: {e}")
                await self._sleep_until_next(deadline)
                continue

            raw = data.get("projectStatus", {}).get("status", "NONE")
            if raw in GateStatus.__members__ and raw != GateStatus.TIMEOUT.value:
                status = GateStatus(raw)
                logger.info(f"Quality gate for {project_key}: {status.value}")
                return status
            logger.info(f"Quality gate for {project_key} not computed yet ({raw})")
            await self._sleep_until_next(deadline)

    async def _sleep_until_next(self, deadline: float) -> None:
        remaining = deadline - time.monotonic()
        await asyncio.sleep(max(0.0, min(self.poll_interval, remaining)))
