"""
Session Manager: one cookie-aware HTTP client per pipeline run.

Every step of a run sends through the same httpx.AsyncClient, so a
Set-Cookie received by an earlier step (typically a login call) is replayed
on later steps. The client is torn down when the run ends, on every exit
path, and cookies never outlive the run.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

import httpx

from apiflow.config import settings

logger = logging.getLogger(__name__)


class RunSession:
    """The run-scoped transport. Owned by the orchestrator, borrowed by each step."""

    def __init__(self, client: httpx.AsyncClient, run_id: int | None = None):
        self.client = client
        self.run_id = run_id
        self.closed = False

    @property
    def cookies(self) -> httpx.Cookies:
        return self.client.cookies

    def cookie_header(self) -> str:
        """Current cookies as `name=value; name2=value2` (debug snapshot)."""
        return "; ".join(f"{cookie.name}={cookie.value}" for cookie in self.cookies.jar)

    async def send(self, request: httpx.Request) -> httpx.Response:
        if self.closed:
            raise RuntimeError(f"Session for run {self.run_id} is already closed")
        return await self.client.send(request)

    async def close(self) -> None:
        if self.closed:
            return
        self.cookies.clear()
        await self.client.aclose()
        self.closed = True
        logger.debug("Session for run %s closed", self.run_id)


class SessionManager:
    """Builds RunSessions with the configured timeout and TLS settings."""

    def __init__(
        self,
        timeout: float | None = None,
        verify: bool | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.timeout = settings.step_timeout_seconds if timeout is None else timeout
        self.verify = settings.verify_tls if verify is None else verify
        self.transport = transport

    def create(self, run_id: int | None = None) -> RunSession:
        client = httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout),
            verify=self.verify,
            follow_redirects=True,
            transport=self.transport,
        )
        return RunSession(client, run_id=run_id)

    @asynccontextmanager
    async def open(self, run_id: int | None = None) -> AsyncIterator[RunSession]:
        session = self.create(run_id)
        logger.debug("Session for run %s opened", run_id)
        try:
            yield session
        finally:
            await session.close()
