from __future__ import annotations

import logging
import socket
from dataclasses import dataclass, field
from typing import Protocol
from urllib import error as urlerror
from urllib import request as urlrequest

from .errors import TransportError

LOGGER = logging.getLogger("stepper.http")

USER_AGENT = "oauth-stepper/0.1"
DEFAULT_HTTP_TIMEOUT_S = 10.0


@dataclass(frozen=True, slots=True)
class HttpResponse:
    status: int
    reason: str = ""
    headers: list[tuple[str, str]] = field(default_factory=list)
    body: bytes = b""

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def header_values(self, name: str) -> list[str]:
        lowered = name.lower()
        return [value for key, value in self.headers if key.lower() == lowered]


class HttpTransport(Protocol):
    def request(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str],
        body: bytes | None,
        timeout_s: float,
    ) -> HttpResponse: ...


class UrllibTransport:
    """Plain ``urllib`` transport; non-2xx statuses are returned, not raised."""

    def __init__(self, *, proxy: str | None = None) -> None:
        handlers: list[urlrequest.BaseHandler] = []
        if proxy:
            handlers.append(urlrequest.ProxyHandler({"http": proxy, "https": proxy}))
        self._opener = urlrequest.build_opener(*handlers)

    def request(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str],
        body: bytes | None,
        timeout_s: float = DEFAULT_HTTP_TIMEOUT_S,
    ) -> HttpResponse:
        merged = {"User-Agent": USER_AGENT, **headers}
        req = urlrequest.Request(url=url, method=method, data=body, headers=merged)
        LOGGER.info("http %s %s", method, url)
        try:
            with self._opener.open(req, timeout=timeout_s) as resp:
                status = int(getattr(resp, "status", 200))
                payload = resp.read()
                response = HttpResponse(
                    status=status,
                    reason=str(getattr(resp, "reason", "") or ""),
                    headers=list(resp.headers.items()),
                    body=payload,
                )
        except urlerror.HTTPError as exc:
            payload = exc.read()
            response = HttpResponse(
                status=int(exc.code),
                reason=str(exc.reason or ""),
                headers=list(exc.headers.items()) if exc.headers else [],
                body=payload,
            )
        except (socket.timeout, TimeoutError):
            LOGGER.info("http %s %s timed out after %ss", method, url, timeout_s)
            raise TransportError(f"timed out contacting {url} after {timeout_s}s") from None
        except urlerror.URLError as exc:
            reason = getattr(exc, "reason", exc)
            LOGGER.info("http %s %s err=%s", method, url, reason)
            raise TransportError(f"network error contacting {url}: {reason}") from None
        LOGGER.info("http %s %s -> %s", method, url, response.status)
        return response
