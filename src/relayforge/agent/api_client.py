# agent/api_client.py
from __future__ import annotations

import asyncio
import json
import urllib.error
import urllib.request
from abc import ABC, abstractmethod
from typing import Iterable, List, Optional
from urllib.parse import urljoin

from relayforge.errors import LeaseExpiredError, NotFoundError, OrchestratorError
from relayforge.protocol import Assignment, JobResult, StepResult


class APIError(OrchestratorError):
    """Raised when API requests fail."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class RunnerClient(ABC):
    """The runner's view of the control plane."""

    @abstractmethod
    async def register(self, runner_id: str, tags: Iterable[str], version: str) -> None: ...

    @abstractmethod
    async def heartbeat(self, runner_id: str) -> List[str]:
        """Returns the ids of held jobs the runner must cancel."""

    @abstractmethod
    async def poll(self, runner_id: str, tags: Iterable[str]) -> Optional[Assignment]: ...

    @abstractmethod
    async def report_step(self, result: StepResult) -> None: ...

    @abstractmethod
    async def report_job(self, result: JobResult) -> None: ...

    @abstractmethod
    async def append_log(self, step_id: str, lease_id: str, level: str, content: str) -> None: ...


class APIClient(RunnerClient):
    """HTTP client for communicating with the relayforge API."""

    def __init__(self, base_url: str, poll_wait: Optional[float] = None, timeout: float = 30.0):
        """
        Args:
            base_url: Base URL of the API (e.g., "http://localhost:8000")
            poll_wait: Long-poll budget sent with each poll (server default if None)
            timeout: Socket timeout added on top of the long-poll budget
        """
        self.base_url = base_url.rstrip("/")
        self.poll_wait = poll_wait
        self.timeout = timeout

    def _request(self, method: str, path: str, data: Optional[dict] = None, timeout: Optional[float] = None) -> Optional[dict]:
        """
        Make a blocking HTTP request. Returns the parsed JSON body, or None
        for an empty (204) response.

        Raises:
            APIError: If the request fails
        """
        url = urljoin(self.base_url + "/", path.lstrip("/"))
        req_data = json.dumps(data).encode("utf-8") if data is not None else None
        req = urllib.request.Request(
            url,
            data=req_data,
            headers={"Content-Type": "application/json"},
            method=method,
        )
        try:
            with urllib.request.urlopen(req, timeout=timeout or self.timeout) as response:
                if response.status == 204:
                    return None
                body = response.read().decode("utf-8")
                return json.loads(body) if body else None
        except urllib.error.HTTPError as e:
            error_body = e.read().decode("utf-8") if e.fp else ""
            raise APIError(f"API request failed: {e.code} {e.reason}. {error_body}", status=e.code)
        except urllib.error.URLError as e:
            raise APIError(f"Network error: {e.reason}")
        except json.JSONDecodeError as e:
            raise APIError(f"Invalid JSON response: {e}")

    async def _call(self, method: str, path: str, data: Optional[dict] = None, timeout: Optional[float] = None) -> Optional[dict]:
        return await asyncio.to_thread(self._request, method, path, data, timeout)

    async def register(self, runner_id: str, tags: Iterable[str], version: str) -> None:
        await self._call(
            "POST",
            "/runners/register",
            {"runner_id": runner_id, "tags": sorted(tags), "version": version},
        )

    async def heartbeat(self, runner_id: str) -> List[str]:
        try:
            response = await self._call("POST", f"/runners/{runner_id}/heartbeat")
        except APIError as e:
            if e.status == 404:
                raise NotFoundError("runner", runner_id) from e
            raise
        return list((response or {}).get("cancel", []))

    async def poll(self, runner_id: str, tags: Iterable[str]) -> Optional[Assignment]:
        payload = {"runner_id": runner_id, "tags": sorted(tags), "wait": self.poll_wait}
        try:
            response = await self._call(
                "POST",
                f"/runners/{runner_id}/poll",
                payload,
                timeout=self.timeout + (self.poll_wait or 0),
            )
        except APIError as e:
            if e.status == 404:
                raise NotFoundError("runner", runner_id) from e
            raise
        if not response:
            return None
        return Assignment.model_validate(response)

    async def report_step(self, result: StepResult) -> None:
        try:
            await self._call("POST", f"/steps/{result.step_id}/result", result.model_dump(mode="json"))
        except APIError as e:
            if e.status == 409:
                raise LeaseExpiredError(result.step_id, result.lease_id) from e
            raise

    async def report_job(self, result: JobResult) -> None:
        try:
            await self._call("POST", f"/jobs/{result.job_id}/result", result.model_dump(mode="json"))
        except APIError as e:
            if e.status == 409:
                raise LeaseExpiredError(result.job_id, result.lease_id) from e
            raise

    async def append_log(self, step_id: str, lease_id: str, level: str, content: str) -> None:
        try:
            await self._call(
                "POST",
                f"/steps/{step_id}/logs",
                {"lease_id": lease_id, "level": level, "content": content},
            )
        except APIError as e:
            if e.status == 409:
                raise LeaseExpiredError(step_id, lease_id) from e
            raise
