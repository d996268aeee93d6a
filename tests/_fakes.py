from __future__ import annotations

import json
from typing import Any
from urllib import parse as urlparse

from oauth_stepper.transport import HttpResponse

SERVER_URL = "https://mcp.example.com/mcp"
PRM_URL = "https://mcp.example.com/.well-known/oauth-protected-resource/mcp"
AUTH_SERVER = "https://auth.example.com"
OTHER_AUTH_SERVER = "https://other.example.com"
AS_METADATA_URL = "https://auth.example.com/.well-known/oauth-authorization-server"
OIDC_METADATA_URL = "https://auth.example.com/.well-known/openid-configuration"
REGISTER_URL = "https://auth.example.com/register"
TOKEN_URL = "https://auth.example.com/token"
AUTHORIZE_URL = "https://auth.example.com/authorize"
NOW = 1_700_000_000


def json_response(status: int, payload: Any, headers: list[tuple[str, str]] | None = None) -> HttpResponse:
    return HttpResponse(
        status=status,
        reason="",
        headers=[("Content-Type", "application/json"), *(headers or [])],
        body=json.dumps(payload).encode("utf-8"),
    )


class ScriptedTransport:
    """Answers by (method, url); the last queued answer for a route repeats."""

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], list[HttpResponse | Exception]] = {}
        self.calls: list[dict[str, Any]] = []

    def add(self, method: str, url: str, *answers: HttpResponse | Exception) -> None:
        self.routes.setdefault((method, url), []).extend(answers)

    def replace(self, method: str, url: str, *answers: HttpResponse | Exception) -> None:
        self.routes[(method, url)] = list(answers)

    def request(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str],
        body: bytes | None,
        timeout_s: float,
    ) -> HttpResponse:
        self.calls.append(
            {"method": method, "url": url, "headers": headers, "body": body, "timeout_s": timeout_s}
        )
        queue = self.routes.get((method, url))
        if not queue:
            return HttpResponse(status=404, reason="Not Found")
        answer = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(answer, Exception):
            raise answer
        return answer

    def calls_to(self, method: str, url: str) -> list[dict[str, Any]]:
        return [c for c in self.calls if c["method"] == method and c["url"] == url]

    def form_of(self, call: dict[str, Any]) -> dict[str, str]:
        return dict(urlparse.parse_qsl((call["body"] or b"").decode("utf-8")))


class RecordingLauncher:
    def __init__(self) -> None:
        self.urls: list[str] = []

    def open(self, url: str) -> None:
        self.urls.append(url)


class Clock:
    def __init__(self, now: int = NOW) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now


def as_metadata(**overrides: Any) -> dict[str, Any]:
    doc: dict[str, Any] = {
        "issuer": AUTH_SERVER,
        "authorization_endpoint": AUTHORIZE_URL,
        "token_endpoint": TOKEN_URL,
        "registration_endpoint": REGISTER_URL,
        "code_challenge_methods_supported": ["S256"],
    }
    doc.update(overrides)
    return doc


def mcp_server(
    transport: ScriptedTransport | None = None,
    *,
    challenge: str | None = f'Bearer resource_metadata="{PRM_URL}", scope="mcp:read"',
    authorization_servers: list[str] | None = None,
) -> ScriptedTransport:
    """An MCP server with RFC 9728 metadata, an RFC 8414 auth server, DCR and a token endpoint."""
    transport = transport or ScriptedTransport()
    headers = [("WWW-Authenticate", challenge)] if challenge else []
    transport.add("POST", SERVER_URL, json_response(401, {"error": "unauthorized"}, headers))
    transport.add(
        "GET",
        PRM_URL,
        json_response(
            200,
            {
                "resource": SERVER_URL,
                "authorization_servers": authorization_servers or [AUTH_SERVER, OTHER_AUTH_SERVER],
                "scopes_supported": ["mcp:read", "mcp:write"],
            },
        ),
    )
    transport.add("GET", AS_METADATA_URL, json_response(200, as_metadata()))
    transport.add(
        "POST",
        REGISTER_URL,
        json_response(201, {"client_id": "client-123", "redirect_uris": ["http://127.0.0.1:33418/callback"]}),
    )
    transport.add(
        "POST",
        TOKEN_URL,
        json_response(
            200,
            {
                "access_token": "access-token-1",
                "token_type": "Bearer",
                "expires_in": 3600,
                "refresh_token": "refresh-token-1",
                "scope": "mcp:read",
            },
        ),
    )
    return transport
