"""Shared test fixtures for backend tests."""

import inspect
from typing import AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from apiflow.api.deps import get_db, get_orchestrator
from apiflow.config import settings
from apiflow.database import Base
from apiflow.main import app
from apiflow.models import ApiItem, Pipeline, PipelineStep
from apiflow.services.run_orchestrator import RunOrchestrator
from apiflow.services.session_manager import SessionManager


class FakeApi:
    """Routes outbound step calls to in-test handlers via httpx.MockTransport."""

    def __init__(self):
        self.routes: dict = {}
        self.requests: list[httpx.Request] = []

    def add(self, method: str, path: str, handler=None, **response_kwargs):
        if handler is None:
            def handler(request):
                return httpx.Response(**response_kwargs)
        self.routes[(method.upper(), path)] = handler

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get((request.method, request.url.path))
        if handler is None:
            return httpx.Response(404, json={"error": f"no route for {request.method} {request.url.path}"})
        response = handler(request)
        if inspect.isawaitable(response):
            response = await response
        return response

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


# ── Database ─────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """A throw-away SQLite database per test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'apiflow.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def seed_pipeline(session_factory):
    """
    Create a pipeline with one ApiItem per step.

        await seed_pipeline([{"url": "http://api.example.com/login", "method": "POST"}, ...])

    Step keys: method, url, headers, params, body, extractions, delay_after,
    is_skip, is_active, order, name.
    """
    async def _seed(steps: list[dict], name: str = "Test pipeline", is_active: bool = True) -> Pipeline:
        async with session_factory() as session:
            pipeline = Pipeline(name=name, is_active=is_active)
            session.add(pipeline)
            await session.flush()

            for index, spec in enumerate(steps, start=1):
                item = ApiItem(
                    name=spec.get("name", f"call {index}"),
                    method=spec.get("method", "GET"),
                    url=spec["url"],
                    request_headers=spec.get("headers"),
                    request_params=spec.get("params"),
                    request_body=spec.get("body"),
                )
                session.add(item)
                await session.flush()
                session.add(PipelineStep(
                    pipeline_id=pipeline.id,
                    api_item_id=item.id,
                    step_order=spec.get("order", index),
                    step_name=spec.get("name", f"Step {index}"),
                    data_extractions=spec.get("extractions"),
                    delay_after=spec.get("delay_after"),
                    is_skip=spec.get("is_skip", False),
                    is_active=spec.get("is_active", True),
                ))
            await session.commit()
            return pipeline

    return _seed


# ── Engine ───────────────────────────────────────────────────────────────────

@pytest.fixture
def fake_api() -> FakeApi:
    return FakeApi()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def orchestrator(session_factory, fake_api, sleeps) -> RunOrchestrator:
    async def _sleep(seconds: float):
        sleeps.append(seconds)

    return RunOrchestrator(
        session_factory=session_factory,
        session_manager=SessionManager(timeout=5.0, verify=False, transport=fake_api.transport),
        sleep=_sleep,
        capture_session_cookies=False,
    )


# ── API client ───────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def api_client(session_factory, orchestrator, monkeypatch) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app, running pipelines inline on the test database."""
    monkeypatch.setattr(settings, "run_dispatch", "inline")

    async def _get_db():
        async with session_factory() as session:
            yield session
            await session.commit()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()
