"""
HTTP Step Executor: builds, sends and times the HTTP call for one step.

The executor never raises for a step-level problem. It returns either a
StepSuccess (status < 400, extraction applied) or a StepFailure tagged with
its kind:

  CONFIGURATION  header/params template is not a JSON object, URL unusable
  TRANSPORT      DNS, connect, timeout, TLS, protocol errors
  HTTP_STATUS    the call completed but the server answered >= 400
"""

import enum
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Mapping, Union

import httpx

from apiflow.services.data_extractor import extract
from apiflow.services.session_manager import RunSession
from apiflow.services.template_resolver import Context, resolve, resolve_map

logger = logging.getLogger(__name__)

BODILESS_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


# ── Step definitions (read-only snapshots of the stored pipeline) ────────────

@dataclass(frozen=True)
class CallTemplate:
    method: str
    url: str
    headers: str | Mapping[str, Any] | None = None
    params: str | Mapping[str, Any] | None = None
    body: str | None = None


@dataclass(frozen=True)
class StepDefinition:
    id: int | None
    order: int
    name: str | None
    call: CallTemplate
    description: str | None = None
    extraction_spec: str | Mapping[str, str] | None = None
    delay_after_ms: int = 0
    skip: bool = False


# ── Outcomes ─────────────────────────────────────────────────────────────────

class FailureKind(str, enum.Enum):
    CONFIGURATION = "configuration"
    TRANSPORT = "transport"
    HTTP_STATUS = "http_status"


@dataclass
class RequestRecord:
    """The request exactly as sent, after template resolution."""
    url: str
    method: str
    headers: dict[str, str] = field(default_factory=dict)
    body: str = ""

    def to_dict(self) -> dict:
        return {"url": self.url, "method": self.method, "headers": self.headers, "body": self.body}


@dataclass
class StepSuccess:
    request: RequestRecord
    status_code: int
    response_body: str
    elapsed_ms: float
    extracted: dict[str, str] = field(default_factory=dict)
    ok = True


@dataclass
class StepFailure:
    kind: FailureKind
    detail: str
    request: RequestRecord | None = None
    status_code: int | None = None
    response_body: str | None = None
    elapsed_ms: float | None = None
    ok = False


StepOutcome = Union[StepSuccess, StepFailure]


def probe_content_type(body: str) -> str:
    try:
        json.loads(body)
    except ValueError:
        return "text/plain"
    return "application/json"


def parse_template_map(raw: str | Mapping[str, Any] | None, label: str) -> dict[str, Any]:
    """Decode a stored name -> template map. Raises ValueError when malformed."""
    if raw is None:
        return {}
    if isinstance(raw, Mapping):
        return dict(raw)
    if not raw.strip():
        return {}
    try:
        decoded = json.loads(raw)
    except ValueError as exc:
        raise ValueError(f"Malformed {label} template: {exc}") from exc
    if not isinstance(decoded, dict):
        raise ValueError(f"Malformed {label} template: expected a JSON object")
    return decoded


def _has_header(headers: Mapping[str, str], name: str) -> bool:
    return any(key.lower() == name.lower() for key in headers)


class StepExecutor:
    """Executes one StepDefinition against the run's session."""

    async def execute(self, step: StepDefinition, context: Context, session: RunSession) -> StepOutcome:
        call = step.call
        method = (call.method or "GET").strip().upper()
        url = resolve(call.url, context) or ""

        try:
            header_templates = parse_template_map(call.headers, "headers")
            param_templates = parse_template_map(call.params, "params") if method in BODILESS_METHODS else {}
        except ValueError as exc:
            return StepFailure(FailureKind.CONFIGURATION, str(exc))

        headers = resolve_map(header_templates, context)
        query = {k: v for k, v in resolve_map(param_templates, context).items() if v.strip()}

        body = None
        if call.body is not None and call.body.strip():
            body = resolve(call.body, context)
            if not _has_header(headers, "Content-Type"):
                headers["Content-Type"] = probe_content_type(body)
        send_body = None if method in BODILESS_METHODS else body

        try:
            request = session.client.build_request(
                method, url, params=query or None, headers=headers, content=send_body,
            )
            if request.url.scheme not in ("http", "https") or not request.url.host:
                raise ValueError(f"URL must be absolute http(s), got {url!r}")
        except (httpx.InvalidURL, ValueError, TypeError) as exc:
            return StepFailure(
                FailureKind.CONFIGURATION, f"Invalid request: {exc}",
                request=RequestRecord(url=url, method=method, headers=headers, body=send_body or ""),
            )

        record = RequestRecord(url=str(request.url), method=method, headers=headers, body=send_body or "")
        logger.debug("Step %s sending %s %s", step.order, method, record.url)

        started = time.perf_counter()
        try:
            response = await session.send(request)
        except httpx.RequestError as exc:
            elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
            detail = f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__
            return StepFailure(FailureKind.TRANSPORT, detail, request=record, elapsed_ms=elapsed_ms)
        elapsed_ms = round((time.perf_counter() - started) * 1000, 2)

        response_body = response.text
        if response.status_code >= 400:
            return StepFailure(
                FailureKind.HTTP_STATUS,
                f"HTTP {response.status_code} {response.reason_phrase}".strip(),
                request=record,
                status_code=response.status_code,
                response_body=response_body,
                elapsed_ms=elapsed_ms,
            )

        extracted = extract(step.extraction_spec, response_body) if step.extraction_spec else {}
        return StepSuccess(
            request=record,
            status_code=response.status_code,
            response_body=response_body,
            elapsed_ms=elapsed_ms,
            extracted=extracted,
        )
