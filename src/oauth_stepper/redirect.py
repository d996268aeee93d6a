from __future__ import annotations

import logging
import sys
import threading
import webbrowser
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Protocol
from urllib import parse as urlparse

from .models import CallbackParams, ClientRegistration, PendingPKCE
from .util.common import now_epoch

LOGGER = logging.getLogger("stepper.flow")

DEFAULT_REDIRECT_URI = "http://127.0.0.1:33418/callback"
LOOPBACK_HOSTS = frozenset({"127.0.0.1", "localhost"})


def build_authorization_url(
    *,
    authorization_endpoint: str,
    registration: ClientRegistration,
    pkce: PendingPKCE,
    scope: str | None,
    resource: str | None,
) -> str:
    params: dict[str, str] = {
        "response_type": "code",
        "client_id": registration.client_id,
        "redirect_uri": pkce.redirect_uri,
        "state": pkce.state,
        "code_challenge": pkce.code_challenge,
        "code_challenge_method": pkce.code_challenge_method,
    }
    if scope:
        params["scope"] = scope
    if resource:
        params["resource"] = resource
    sep = "&" if "?" in authorization_endpoint else "?"
    return f"{authorization_endpoint}{sep}{urlparse.urlencode(params)}"


def parse_callback_url(url: str, *, now: int | None = None) -> CallbackParams:
    """Read ``code``/``state`` or an error triple from a redirect URL's query."""
    parts = urlparse.urlsplit(url.strip())
    query = parts.query
    # Some servers answer with response_mode=fragment.
    if not query and parts.fragment and "=" in parts.fragment:
        query = parts.fragment
    qs = urlparse.parse_qs(query)
    if not any(key in qs for key in ("code", "state", "error")):
        raise ValueError("redirect URL carries no code, state or error parameter")

    def _first(key: str) -> str | None:
        values = qs.get(key)
        return values[0] if values else None

    return CallbackParams(
        code=_first("code"),
        state=_first("state"),
        error=_first("error"),
        error_description=_first("error_description"),
        error_uri=_first("error_uri"),
        iss=_first("iss"),
        received_at=now if now is not None else now_epoch(),
    )


def is_loopback_redirect(redirect_uri: str) -> bool:
    parts = urlparse.urlsplit(redirect_uri)
    return parts.scheme == "http" and parts.hostname in LOOPBACK_HOSTS


class BrowserLauncher(Protocol):
    def open(self, url: str) -> None: ...


class WebbrowserLauncher:
    def open(self, url: str) -> None:
        LOGGER.info("redirect.browser open")
        if not webbrowser.open(url):
            # No usable browser; the user can still copy the URL.
            print(f"Open: {url}", file=sys.stderr)


class PrintLauncher:
    """Headless launcher: prints the authorize URL on stderr, stdout stays JSON."""

    def __init__(self, stream=None) -> None:
        self._stream = stream

    def open(self, url: str) -> None:
        print(f"Open: {url}", file=self._stream or sys.stderr)


class LoopbackCallbackListener:
    """Loopback HTTP listener that captures the first request to the redirect path."""

    def __init__(self, redirect_uri: str = DEFAULT_REDIRECT_URI) -> None:
        parts = urlparse.urlsplit(redirect_uri)
        if not is_loopback_redirect(redirect_uri):
            raise ValueError(
                "redirect_uri must be local http://127.0.0.1:<port>/... or http://localhost:<port>/..."
            )
        self._host = parts.hostname or "127.0.0.1"
        self._port = parts.port or 0
        self._path = parts.path or "/"
        self._event = threading.Event()
        self._callback_url: str | None = None
        self._server: ThreadingHTTPServer | None = None
        self._thread: threading.Thread | None = None
        self.redirect_uri = redirect_uri

    def start(self) -> str:
        listener = self

        class Handler(BaseHTTPRequestHandler):
            def do_GET(self) -> None:  # noqa: N802
                req = urlparse.urlsplit(self.path)
                if req.path != listener._path or listener._event.is_set():
                    self.send_response(404)
                    self.end_headers()
                    return
                listener._callback_url = urlparse.urlunsplit(
                    ("http", f"{listener._host}:{listener._port}", req.path, req.query, "")
                )
                body = b"Authorization response received. You can close this window.\n"
                self.send_response(200)
                self.send_header("Content-Type", "text/plain; charset=utf-8")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)
                listener._event.set()

            def log_message(self, format: str, *args: object) -> None:  # noqa: A003
                return

        try:
            server = ThreadingHTTPServer((self._host, self._port), Handler)
        except OSError as exc:
            raise ValueError(
                f"unable to bind redirect URI {self.redirect_uri}; ensure the port is free ({exc})"
            ) from None
        self._server = server
        self._port = server.server_address[1]
        self.redirect_uri = urlparse.urlunsplit(
            ("http", f"{self._host}:{self._port}", self._path, "", "")
        )
        self._thread = threading.Thread(target=server.serve_forever, daemon=True)
        self._thread.start()
        LOGGER.info("redirect.listener started redirect_uri=%s", self.redirect_uri)
        return self.redirect_uri

    def wait(self, timeout_s: float) -> str:
        if not self._event.wait(timeout_s):
            raise TimeoutError(f"timed out waiting for OAuth callback on {self.redirect_uri}")
        assert self._callback_url is not None
        return self._callback_url

    def stop(self) -> None:
        if self._server is None:
            return
        try:
            self._server.shutdown()
            self._server.server_close()
        finally:
            if self._thread is not None:
                self._thread.join(timeout=2.0)
            self._server = None
            LOGGER.info("redirect.listener stopped redirect_uri=%s", self.redirect_uri)

    def __enter__(self) -> LoopbackCallbackListener:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()
