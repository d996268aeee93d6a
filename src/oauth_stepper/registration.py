from __future__ import annotations

import logging
from typing import Any

from .capture import CapturingClient
from .errors import RegistrationError, TransportError
from .models import AuthServerMetadata, ClientRegistration
from .util.common import as_int, as_optional_str, as_str_list, now_epoch

LOGGER = logging.getLogger("stepper.flow")


def client_metadata(*, client_name: str, redirect_uri: str, scope: str | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "client_name": client_name,
        "redirect_uris": [redirect_uri],
        "grant_types": ["authorization_code", "refresh_token"],
        "response_types": ["code"],
        "token_endpoint_auth_method": "none",
    }
    if scope:
        payload["scope"] = scope
    return payload


def register_dynamic_client(
    client: CapturingClient,
    metadata: AuthServerMetadata,
    *,
    client_name: str,
    redirect_uri: str,
    scope: str | None = None,
    now: int | None = None,
) -> ClientRegistration:
    endpoint = metadata.registration_endpoint
    if not endpoint:
        raise RegistrationError(
            "authorization server does not advertise a registration_endpoint; "
            "use a preregistered client_id instead"
        )
    try:
        response = client.send(
            "POST",
            endpoint,
            json_body=client_metadata(
                client_name=client_name, redirect_uri=redirect_uri, scope=scope
            ),
        )
    except TransportError as exc:
        raise RegistrationError(f"dynamic client registration failed: {exc}") from None

    payload = response.json()
    if not response.ok:
        body = payload if isinstance(payload, dict) else {}
        msg = as_optional_str(body.get("error_description")) or as_optional_str(body.get("error"))
        if msg:
            raise RegistrationError(
                f"dynamic client registration failed: {msg}",
                oauth_error=as_optional_str(body.get("error")),
            )
        raise RegistrationError(f"dynamic client registration failed (HTTP {response.status})")
    if not isinstance(payload, dict):
        raise RegistrationError("invalid dynamic client registration response")
    client_id = as_optional_str(payload.get("client_id"))
    if not client_id:
        raise RegistrationError("dynamic client registration returned no client_id")

    issued_at = as_int(payload.get("client_id_issued_at"))
    if issued_at is None:
        issued_at = now if now is not None else now_epoch()
    LOGGER.info("registration.dcr client_id=%s", client_id)
    return ClientRegistration(
        client_id=client_id,
        client_secret=as_optional_str(payload.get("client_secret")),
        redirect_uris=as_str_list(payload.get("redirect_uris")) or [redirect_uri],
        source="dcr",
        client_secret_expires_at=as_int(payload.get("client_secret_expires_at")),
        issued_at=issued_at,
    )


def preregistered_client(
    *, client_id: str | None, client_secret: str | None, redirect_uri: str
) -> ClientRegistration:
    if not client_id:
        raise RegistrationError("preregistered registration requires a client_id")
    return ClientRegistration(
        client_id=client_id,
        client_secret=client_secret,
        redirect_uris=[redirect_uri],
        source="preregistered",
    )


def metadata_document_client(
    metadata: AuthServerMetadata, *, metadata_url: str | None, redirect_uri: str
) -> ClientRegistration:
    """The HTTPS URL of the client's metadata document doubles as its client_id."""
    if not metadata_url:
        raise RegistrationError("cimd registration requires a client metadata document URL")
    if not metadata_url.startswith("https://"):
        raise RegistrationError("client metadata document URL must be an https:// URL")
    if not metadata.client_id_metadata_document_supported:
        LOGGER.warning(
            "registration.cimd issuer=%s does not advertise client_id_metadata_document_supported",
            metadata.issuer,
        )
    return ClientRegistration(
        client_id=metadata_url,
        redirect_uris=[redirect_uri],
        source="cimd",
    )
