from __future__ import annotations

import logging
from enum import StrEnum

from .capture import CapturingClient
from .errors import DiscoveryError, TransportError
from .models import AuthServerMetadata, ResourceMetadata, ResponseRecord
from .util.oauth_discovery import build_fallback_endpoints
from .util.www_authenticate import bearer_challenge_params

LOGGER = logging.getLogger("stepper.flow")

CLIENT_NAME = "oauth-stepper"
CLIENT_VERSION = "0.1.0"


class FallbackPolicy(StrEnum):
    FAIL = "fail"
    GUESS = "guess"


def probe_server(client: CapturingClient, server_url: str, *, protocol_version: str) -> ResponseRecord:
    """POST an unauthenticated ``initialize`` so the server answers with its challenge."""
    probe_json = {
        "jsonrpc": "2.0",
        "id": 1,
        "method": "initialize",
        "params": {
            "protocolVersion": protocol_version,
            "capabilities": {},
            "clientInfo": {"name": CLIENT_NAME, "version": CLIENT_VERSION},
        },
    }
    try:
        return client.send(
            "POST",
            server_url,
            json_body=probe_json,
            headers={"Accept": "application/json, text/event-stream"},
        )
    except TransportError as exc:
        raise DiscoveryError(f"unauthenticated probe failed: {exc}") from None


def parse_unauthorized(status: int | None, www_authenticate: str | None) -> dict[str, str]:
    if status != 401:
        raise DiscoveryError(
            f"expected HTTP 401 from the MCP server, got {status if status is not None else 'no response'}"
        )
    params = bearer_challenge_params(www_authenticate)
    if params:
        LOGGER.info("discovery.challenge bearer params=%s", ",".join(sorted(params)))
    return params


def fetch_resource_metadata(
    client: CapturingClient, urls: list[str] | tuple[str, ...]
) -> tuple[ResourceMetadata, str]:
    if not urls:
        raise DiscoveryError("no protected resource metadata URL to try")
    misses: list[str] = []
    for url in urls:
        try:
            response = client.send("GET", url)
        except TransportError as exc:
            LOGGER.info("discovery.protected_resource miss url=%s err=%s", url, exc)
            misses.append(f"{url}: {exc}")
            continue
        if not response.ok:
            LOGGER.info("discovery.protected_resource miss url=%s status=%s", url, response.status)
            misses.append(f"{url}: HTTP {response.status}")
            continue
        try:
            metadata = ResourceMetadata.from_payload(response.json())
        except ValueError as exc:
            LOGGER.info("discovery.protected_resource invalid url=%s err=%s", url, exc)
            misses.append(f"{url}: {exc}")
            continue
        LOGGER.info("discovery.protected_resource hit url=%s", url)
        return metadata, url
    raise DiscoveryError(
        "protected resource metadata not found (" + "; ".join(misses) + ")"
    )


def fetch_authorization_server_metadata(
    client: CapturingClient,
    urls: list[str] | tuple[str, ...],
    *,
    issuer: str,
    fallback_policy: FallbackPolicy = FallbackPolicy.FAIL,
) -> tuple[AuthServerMetadata, str]:
    """GET each candidate in order; returns the metadata and the URL (or ``fallback``) used."""
    misses: list[str] = []
    all_client_errors = bool(urls)
    for url in urls:
        try:
            response = client.send("GET", url)
        except TransportError as exc:
            LOGGER.info("discovery.authorization_server miss url=%s err=%s", url, exc)
            misses.append(f"{url}: {exc}")
            all_client_errors = False
            continue
        if not response.ok:
            LOGGER.info(
                "discovery.authorization_server miss url=%s status=%s", url, response.status
            )
            misses.append(f"{url}: HTTP {response.status}")
            if not 400 <= response.status < 500:
                all_client_errors = False
            continue
        try:
            metadata = AuthServerMetadata.from_payload(response.json(), default_issuer=issuer)
        except ValueError as exc:
            LOGGER.info("discovery.authorization_server invalid url=%s err=%s", url, exc)
            misses.append(f"{url}: {exc}")
            all_client_errors = False
            continue
        LOGGER.info("discovery.authorization_server hit url=%s", url)
        return metadata, url

    if fallback_policy is FallbackPolicy.GUESS and (all_client_errors or not urls):
        LOGGER.info("discovery.authorization_server fallback issuer=%s", issuer)
        endpoints = build_fallback_endpoints(issuer)
        return AuthServerMetadata.from_payload(endpoints, default_issuer=issuer), "fallback"

    detail = "; ".join(misses) if misses else "no candidate URLs"
    raise DiscoveryError(f"authorization server metadata not found ({detail})")
