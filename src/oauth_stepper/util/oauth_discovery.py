from __future__ import annotations

from urllib import parse as urlparse

from .common import dedupe, url_origin

PROTECTED_RESOURCE_WELL_KNOWN = "/.well-known/oauth-protected-resource"
AUTHORIZATION_SERVER_WELL_KNOWN = "/.well-known/oauth-authorization-server"
OPENID_CONFIGURATION_WELL_KNOWN = "/.well-known/openid-configuration"


def build_protected_resource_metadata_urls(
    endpoint: str, *, hinted_resource_metadata: str | None = None
) -> list[str]:
    candidates: list[str] = []

    hinted = hinted_resource_metadata.strip() if hinted_resource_metadata else ""
    if hinted:
        candidates.append(hinted)

    parsed = urlparse.urlsplit(endpoint)
    if not parsed.scheme or not parsed.netloc:
        return dedupe(candidates)

    base = f"{parsed.scheme}://{parsed.netloc}"
    path = parsed.path.strip("/")
    if path:
        candidates.append(f"{base}{PROTECTED_RESOURCE_WELL_KNOWN}/{path}")
    candidates.append(f"{base}{PROTECTED_RESOURCE_WELL_KNOWN}")
    return dedupe(candidates)


def build_authorization_server_metadata_urls(
    issuer: str, *, include_openid: bool = True
) -> list[str]:
    issuer = issuer.rstrip("/")
    parsed = urlparse.urlsplit(issuer)
    if not parsed.scheme or not parsed.netloc:
        return []

    base = f"{parsed.scheme}://{parsed.netloc}"
    path = parsed.path.strip("/")
    urls: list[str] = []
    if path:
        urls.append(f"{base}{AUTHORIZATION_SERVER_WELL_KNOWN}/{path}")
        urls.append(f"{base}{AUTHORIZATION_SERVER_WELL_KNOWN}")
        if include_openid:
            urls.append(f"{base}{OPENID_CONFIGURATION_WELL_KNOWN}/{path}")
            urls.append(f"{issuer}{OPENID_CONFIGURATION_WELL_KNOWN}")
    else:
        urls.append(f"{issuer}{AUTHORIZATION_SERVER_WELL_KNOWN}")
        if include_openid:
            urls.append(f"{issuer}{OPENID_CONFIGURATION_WELL_KNOWN}")
    return dedupe(urls)


def build_legacy_authorization_server_metadata_urls(server_url: str) -> list[str]:
    # Pre-RFC 9728 servers host metadata at the MCP server's origin, path discarded.
    origin = url_origin(server_url)
    if origin is None:
        return []
    return [f"{origin}{AUTHORIZATION_SERVER_WELL_KNOWN}"]


def build_fallback_endpoints(issuer: str) -> dict[str, str]:
    base = issuer.rstrip("/")
    return {
        "issuer": base,
        "authorization_endpoint": f"{base}/authorize",
        "token_endpoint": f"{base}/token",
        "registration_endpoint": f"{base}/register",
    }

