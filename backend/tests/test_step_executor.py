"""Tests for building, sending and classifying a single step call."""

import asyncio
import json

import httpx
import pytest

from apiflow.services.session_manager import SessionManager
from apiflow.services.step_executor import (
    CallTemplate,
    FailureKind,
    StepDefinition,
    StepExecutor,
    StepFailure,
    StepSuccess,
    parse_template_map,
    probe_content_type,
)
from apiflow.services.template_resolver import EMPTY_CONTEXT, Context


def _step(method="GET", url="http://api.example.com/ping", order=1, extraction_spec=None, **call) -> StepDefinition:
    return StepDefinition(
        id=order,
        order=order,
        name=f"Step {order}",
        call=CallTemplate(method=method, url=url, **call),
        extraction_spec=extraction_spec,
    )


@pytest.fixture
def executor() -> StepExecutor:
    return StepExecutor()


@pytest.fixture
def manager(fake_api) -> SessionManager:
    return SessionManager(timeout=5.0, verify=False, transport=fake_api.transport)


class TestHelpers:
    def test_probe_content_type(self):
        assert probe_content_type('{"a": 1}') == "application/json"
        assert probe_content_type("[1, 2]") == "application/json"
        assert probe_content_type("name=value") == "text/plain"

    def test_parse_template_map(self):
        assert parse_template_map(None, "headers") == {}
        assert parse_template_map("  ", "headers") == {}
        assert parse_template_map('{"A": "1"}', "headers") == {"A": "1"}
        assert parse_template_map({"A": "1"}, "headers") == {"A": "1"}

    @pytest.mark.parametrize("raw", ["{not json", '["A"]', '"text"'])
    def test_parse_template_map_malformed(self, raw):
        with pytest.raises(ValueError, match="Malformed headers template"):
            parse_template_map(raw, "headers")


@pytest.mark.asyncio
class TestRequestBuilding:
    async def test_resolves_url_headers_and_body(self, executor, manager, fake_api):
        fake_api.add("POST", "/users/7", status_code=201, json={"ok": True})
        step = _step(
            method="post",
            url="http://api.example.com/users/{{id}}",
            headers=json.dumps({"Authorization": "Bearer {{token}}"}),
            body='{"name": "{{name:anon}}"}',
        )
        ctx = Context.from_raw({"id": 7, "token": "t1"})

        async with manager.open(1) as session:
            outcome = await executor.execute(step, ctx, session)

        assert isinstance(outcome, StepSuccess)
        sent = fake_api.requests[0]
        assert sent.method == "POST"
        assert sent.headers["Authorization"] == "Bearer t1"
        assert sent.headers["Content-Type"] == "application/json"
        assert sent.content == b'{"name": "anon"}'
        assert outcome.request.url == "http://api.example.com/users/7"
        assert outcome.request.body == '{"name": "anon"}'
        assert outcome.status_code == 201

    async def test_non_json_body_is_text_plain(self, executor, manager, fake_api):
        fake_api.add("PUT", "/notes", status_code=200, text="ok")
        async with manager.open(1) as session:
            await executor.execute(_step(method="PUT", url="http://api.example.com/notes", body="hello"), EMPTY_CONTEXT, session)
        assert fake_api.requests[0].headers["Content-Type"] == "text/plain"

    async def test_explicit_content_type_is_kept(self, executor, manager, fake_api):
        fake_api.add("POST", "/form", status_code=200, text="ok")
        step = _step(
            method="POST",
            url="http://api.example.com/form",
            headers='{"content-type": "application/x-www-form-urlencoded"}',
            body="a=1",
        )
        async with manager.open(1) as session:
            await executor.execute(step, EMPTY_CONTEXT, session)
        assert fake_api.requests[0].headers["Content-Type"] == "application/x-www-form-urlencoded"

    async def test_get_never_sends_a_body(self, executor, manager, fake_api):
        fake_api.add("GET", "/ping", status_code=200, text="pong")
        async with manager.open(1) as session:
            outcome = await executor.execute(_step(body='{"ignored": true}'), EMPTY_CONTEXT, session)
        assert fake_api.requests[0].content == b""
        assert outcome.request.body == ""

    async def test_blank_query_values_are_omitted(self, executor, manager, fake_api):
        fake_api.add("GET", "/search", status_code=200, json=[])
        step = _step(
            url="http://api.example.com/search",
            params=json.dumps({"q": "{{term}}", "page": "{{page:1}}", "filter": "{{missing}}", "blank": "  "}),
        )
        async with manager.open(1) as session:
            await executor.execute(step, Context.from_raw({"term": "cats"}), session)
        params = fake_api.requests[0].url.params
        assert params["q"] == "cats"
        assert params["page"] == "1"
        assert "filter" not in params
        assert "blank" not in params

    async def test_extraction_applied_on_success(self, executor, manager, fake_api):
        fake_api.add("GET", "/ping", status_code=200, json={"data": {"token": "abc", "n": 5}})
        step = _step(extraction_spec='{"token": "data.token", "n": "data.n", "gone": "data.x"}')
        async with manager.open(1) as session:
            outcome = await executor.execute(step, EMPTY_CONTEXT, session)
        assert outcome.ok
        assert outcome.extracted == {"token": "abc", "n": "5"}

    async def test_no_extraction_spec_gives_empty_map(self, executor, manager, fake_api):
        fake_api.add("GET", "/ping", status_code=200, json={"a": 1})
        async with manager.open(1) as session:
            outcome = await executor.execute(_step(), EMPTY_CONTEXT, session)
        assert outcome.extracted == {}
        assert outcome.elapsed_ms >= 0


@pytest.mark.asyncio
class TestFailures:
    async def test_http_error_status(self, executor, manager, fake_api):
        fake_api.add("GET", "/ping", status_code=500, text="boom")
        async with manager.open(1) as session:
            outcome = await executor.execute(_step(), EMPTY_CONTEXT, session)

        assert isinstance(outcome, StepFailure)
        assert outcome.kind == FailureKind.HTTP_STATUS
        assert outcome.status_code == 500
        assert outcome.response_body == "boom"
        assert outcome.detail == "HTTP 500 Internal Server Error"
        assert outcome.request.url == "http://api.example.com/ping"

    async def test_transport_error(self, executor, manager, fake_api):
        def refuse(request):
            raise httpx.ConnectError("Connection refused", request=request)

        fake_api.add("GET", "/ping", refuse)
        async with manager.open(1) as session:
            outcome = await executor.execute(_step(), EMPTY_CONTEXT, session)

        assert outcome.kind == FailureKind.TRANSPORT
        assert outcome.detail == "ConnectError: Connection refused"
        assert outcome.status_code is None
        assert outcome.request is not None

    async def test_timeout_is_a_transport_error(self, executor, manager, fake_api):
        def slow(request):
            raise httpx.ReadTimeout("timed out", request=request)

        fake_api.add("GET", "/ping", slow)
        async with manager.open(1) as session:
            outcome = await executor.execute(_step(), EMPTY_CONTEXT, session)
        assert outcome.kind == FailureKind.TRANSPORT

    async def test_malformed_headers_are_a_configuration_error(self, executor, manager, fake_api):
        async with manager.open(1) as session:
            outcome = await executor.execute(_step(headers="{not json"), EMPTY_CONTEXT, session)
        assert outcome.kind == FailureKind.CONFIGURATION
        assert "Malformed headers template" in outcome.detail
        assert fake_api.requests == []

    async def test_malformed_params_are_a_configuration_error(self, executor, manager, fake_api):
        async with manager.open(1) as session:
            outcome = await executor.execute(_step(params="[1, 2]"), EMPTY_CONTEXT, session)
        assert outcome.kind == FailureKind.CONFIGURATION
        assert fake_api.requests == []

    async def test_unusable_url_is_a_configuration_error(self, executor, manager, fake_api):
        async with manager.open(1) as session:
            outcome = await executor.execute(_step(url="{{base}}/ping"), EMPTY_CONTEXT, session)
        assert outcome.kind == FailureKind.CONFIGURATION
        assert "absolute" in outcome.detail
        assert fake_api.requests == []


@pytest.mark.asyncio
class TestSessions:
    async def test_cookie_replayed_on_later_step(self, executor, manager, fake_api):
        fake_api.add("POST", "/login", status_code=200, json={}, headers={"Set-Cookie": "sid=abc123; Path=/"})
        fake_api.add("GET", "/me", status_code=200, json={"user": "u1"})

        async with manager.open(1) as session:
            await executor.execute(_step(method="POST", url="http://api.example.com/login"), EMPTY_CONTEXT, session)
            await executor.execute(_step(url="http://api.example.com/me", order=2), EMPTY_CONTEXT, session)
            assert session.cookie_header() == "sid=abc123"

        assert "cookie" not in fake_api.requests[0].headers
        assert fake_api.requests[1].headers["cookie"] == "sid=abc123"

    async def test_concurrent_runs_do_not_share_cookies(self, executor, manager, fake_api):
        def login(request):
            user = request.url.params["user"]
            return httpx.Response(200, json={}, headers={"Set-Cookie": f"sid={user}; Path=/"})

        fake_api.add("GET", "/login", login)
        fake_api.add("GET", "/me", status_code=200, json={})

        async def run(user: str, run_id: int):
            async with manager.open(run_id) as session:
                await executor.execute(
                    _step(url="http://api.example.com/login", params=json.dumps({"user": user})),
                    EMPTY_CONTEXT, session,
                )
                await asyncio.sleep(0)
                await executor.execute(_step(url="http://api.example.com/me", order=2), EMPTY_CONTEXT, session)

        await asyncio.gather(run("alice", 1), run("bob", 2))

        me_cookies = sorted(r.headers["cookie"] for r in fake_api.requests if r.url.path == "/me")
        assert me_cookies == ["sid=alice", "sid=bob"]

    async def test_session_closed_on_exit(self, manager, fake_api):
        async with manager.open(1) as session:
            pass
        assert session.closed
        with pytest.raises(RuntimeError):
            await session.send(httpx.Request("GET", "http://api.example.com/ping"))
