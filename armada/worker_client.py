"""Connections to remote execution workers."""

from __future__ import annotations

from typing import Any, Protocol

import httpx

from armada.exceptions import WorkerCommunicationError
from armada.logging import get_logger
from armada.types import ExecutionResult

logger = get_logger("worker_client")

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_CONNECT_TIMEOUT = 10.0


class WorkerClient(Protocol):
    """What the pool and health monitor need from a worker connection."""

    async def connect(self) -> None:
        """Establish (or re-establish) the connection. Raises on failure."""
        ...

    async def ping(self) -> bool:
        """Probe worker health."""
        ...

    async def execute_agent(
        self,
        capability: str,
        payload: dict[str, Any],
        options: dict[str, Any] | None = None,
    ) -> ExecutionResult:
        """Run one unit of work on the worker."""
        ...

    async def close(self) -> None:
        ...


class HttpWorkerClient:
    """Worker connection over HTTP.

    ``GET {address}/health`` answers health probes and
    ``POST {address}/trigger`` executes work. The auth token, when given, is
    sent as a bearer token and never inspected.
    """

    def __init__(
        self,
        address: str,
        auth_token: str | None = None,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.address = address.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._timeout = httpx.Timeout(timeout_seconds, connect=DEFAULT_CONNECT_TIMEOUT)
        self._headers = {"Authorization": f"Bearer {auth_token}"} if auth_token else {}
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.address,
                timeout=self._timeout,
                headers=self._headers,
                transport=self._transport,
            )
        return self._client

    async def connect(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        if not await self.ping():
            raise WorkerCommunicationError(f"Worker at {self.address} did not answer the health check")
        logger.debug(f"Connected to {self.address}")

    async def ping(self) -> bool:
        try:
            response = await self._get_client().get("/health")
        except httpx.TimeoutException:
            logger.debug(f"Health check timed out for {self.address}")
            return False
        except httpx.HTTPError as exc:
            logger.debug(f"Health check failed for {self.address}: {exc}")
            return False
        return response.is_success

    async def execute_agent(
        self,
        capability: str,
        payload: dict[str, Any],
        options: dict[str, Any] | None = None,
    ) -> ExecutionResult:
        """POST the work to ``/trigger``.

        The read timeout is ``options["timeout"]``, the task timeout the pool
        enforces, and unbounded when no task timeout is given.
        """
        options = options or {}
        body = {"agent": capability, "payload": payload, "options": options}
        timeout = httpx.Timeout(self._timeout_seconds, connect=DEFAULT_CONNECT_TIMEOUT, read=options.get("timeout"))
        try:
            response = await self._get_client().post("/trigger", json=body, timeout=timeout)
        except httpx.TimeoutException as exc:
            raise WorkerCommunicationError(f"Timed out calling {self.address}/trigger") from exc
        except httpx.HTTPError as exc:
            raise WorkerCommunicationError(f"Error calling {self.address}/trigger: {exc}") from exc

        if not response.is_success:
            return ExecutionResult(success=False, error=f"HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as exc:
            raise WorkerCommunicationError(f"Invalid response from {self.address}/trigger") from exc
        return ExecutionResult.from_dict(data)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
