"""Request/response capture for every HTTP call a flow makes.

Records keep the exact headers and bodies that went over the wire. Anything
meant for display goes through :func:`redact_exchange` / :func:`describe_state`;
anything persisted goes through :func:`scrub_exchange`.
"""

from __future__ import annotations

import json
import time
from dataclasses import replace
from typing import Any
from urllib import parse as urlparse

from .errors import TransportError
from .models import FlowState, HttpExchange, RequestRecord, ResponseRecord
from .models import flow_state_to_doc
from .transport import DEFAULT_HTTP_TIMEOUT_S, HttpResponse, HttpTransport

SECRET_HEADERS = frozenset({"authorization", "cookie", "set-cookie", "proxy-authorization"})
SECRET_FIELDS = frozenset(
    {
        "access_token",
        "refresh_token",
        "id_token",
        "client_secret",
        "code",
        "code_verifier",
        "state",
    }
)


class CapturingClient:
    """Issues HTTP calls for one step and keeps an exchange per call, in order."""

    def __init__(
        self,
        transport: HttpTransport,
        *,
        step: str,
        timeout_s: float = DEFAULT_HTTP_TIMEOUT_S,
    ) -> None:
        self._transport = transport
        self._timeout_s = timeout_s
        self.step = step
        self.exchanges: list[HttpExchange] = []

    def send(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        form: dict[str, str] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> ResponseRecord:
        if form is not None and json_body is not None:
            raise ValueError("internal error: form and json_body are mutually exclusive")
        req_headers = {"Accept": "application/json"}
        body_text: str | None = None
        if form is not None:
            body_text = urlparse.urlencode(form)
            req_headers["Content-Type"] = "application/x-www-form-urlencoded"
        elif json_body is not None:
            body_text = json.dumps(json_body, separators=(",", ":"))
            req_headers["Content-Type"] = "application/json"
        if headers:
            req_headers.update(headers)

        request = RequestRecord(method=method, url=url, headers=req_headers, body=body_text)
        started = time.time()
        try:
            raw = self._transport.request(
                method,
                url,
                headers=dict(req_headers),
                body=body_text.encode("utf-8") if body_text is not None else None,
                timeout_s=self._timeout_s,
            )
        except TransportError as exc:
            self.exchanges.append(
                HttpExchange(
                    step=self.step,
                    request=request,
                    error=str(exc),
                    started_at=started,
                    elapsed_ms=_elapsed_ms(started),
                )
            )
            raise

        response = _response_record(raw)
        self.exchanges.append(
            HttpExchange(
                step=self.step,
                request=request,
                response=response,
                started_at=started,
                elapsed_ms=_elapsed_ms(started),
            )
        )
        return response


def _response_record(raw: HttpResponse) -> ResponseRecord:
    headers: dict[str, str] = {}
    for key, value in raw.headers:
        # Repeated headers (e.g. several WWW-Authenticate challenges) are comma-joined.
        lowered = key.lower()
        headers[lowered] = f"{headers[lowered]}, {value}" if lowered in headers else value
    return ResponseRecord(
        status=raw.status,
        reason=raw.reason,
        headers=headers,
        body=raw.text() if raw.body else None,
    )


def _elapsed_ms(started: float) -> int:
    return int((time.time() - started) * 1000)


def mask_secret(value: str) -> str:
    if len(value) <= 8:
        return "[redacted]"
    return f"{value[:4]}...[redacted]"


def redact_headers(headers: dict[str, str]) -> dict[str, str]:
    out: dict[str, str] = {}
    for key, value in headers.items():
        if key.lower() not in SECRET_HEADERS:
            out[key] = value
        elif key.lower() == "authorization" and " " in value:
            scheme, _, credential = value.partition(" ")
            out[key] = f"{scheme} {mask_secret(credential)}"
        else:
            out[key] = mask_secret(value)
    return out


def redact_body(body: str | None, *, content_type: str | None = None) -> str | None:
    if not body:
        return body
    if content_type and "x-www-form-urlencoded" in content_type.lower():
        return _redact_form(body)
    try:
        parsed = json.loads(body)
    except json.JSONDecodeError:
        if content_type is None and "=" in body and "{" not in body:
            return _redact_form(body)
        return body
    return json.dumps(_redact_json(parsed), separators=(",", ":"), ensure_ascii=False)


def _redact_form(body: str) -> str:
    pairs = urlparse.parse_qsl(body, keep_blank_values=True)
    masked = [(key, mask_secret(value) if key in SECRET_FIELDS else value) for key, value in pairs]
    return urlparse.urlencode(masked, safe="[]./")


def _redact_json(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            key: mask_secret(item)
            if key in SECRET_FIELDS and isinstance(item, str)
            else _redact_json(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [_redact_json(item) for item in value]
    return value


def scrub_request(request: RequestRecord) -> RequestRecord:
    return replace(
        request,
        headers=redact_headers(request.headers),
        body=redact_body(request.body, content_type=request.headers.get("Content-Type")),
    )


def scrub_exchange(exchange: HttpExchange) -> HttpExchange:
    """Copy of ``exchange`` with secrets masked; the form snapshots persist."""
    response = exchange.response
    if response is not None:
        response = replace(
            response,
            headers=redact_headers(response.headers),
            body=redact_body(response.body, content_type=response.header("content-type")),
        )
    return replace(exchange, request=scrub_request(exchange.request), response=response)


def redact_request(request: RequestRecord) -> dict[str, Any]:
    scrubbed = scrub_request(request)
    return {
        "method": scrubbed.method,
        "url": scrubbed.url,
        "headers": scrubbed.headers,
        "body": scrubbed.body,
    }


def redact_exchange(exchange: HttpExchange) -> dict[str, Any]:
    scrubbed = scrub_exchange(exchange)
    out: dict[str, Any] = {
        "step": scrubbed.step,
        "request": redact_request(exchange.request),
        "elapsed_ms": scrubbed.elapsed_ms,
    }
    if scrubbed.response is not None:
        response = scrubbed.response
        out["response"] = {
            "status": response.status,
            "reason": response.reason,
            "headers": response.headers,
            "body": response.body,
        }
    if scrubbed.error:
        out["error"] = scrubbed.error
    return out


def describe_state(state: FlowState, *, include_records: bool = False) -> dict[str, Any]:
    doc = flow_state_to_doc(state)
    doc.pop("records")
    doc["in_flight"] = state.in_flight
    doc["record_count"] = len(state.records)
    doc = _redact_json(doc)
    # The authorize URL only carries the public S256 challenge, but state is a CSRF secret.
    if state.authorization_url:
        doc["authorization_url"] = _redact_query_param(state.authorization_url, "state")
    if state.token_request is not None:
        doc["token_request"] = redact_request(state.token_request)
    if include_records:
        doc["records"] = [redact_exchange(record) for record in state.records]
    return doc


def _redact_query_param(url: str, name: str) -> str:
    parts = urlparse.urlsplit(url)
    pairs = urlparse.parse_qsl(parts.query, keep_blank_values=True)
    masked = [(key, mask_secret(value) if key == name else value) for key, value in pairs]
    return urlparse.urlunsplit(parts._replace(query=urlparse.urlencode(masked, safe="[]./")))
