from __future__ import annotations

import logging
from urllib import parse as urlparse

from .capture import CapturingClient
from .errors import TokenExchangeError, TransportError
from .models import ClientRegistration, PendingPKCE, RequestRecord, TokenSet

LOGGER = logging.getLogger("stepper.flow")

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"


def authorization_code_form(
    *,
    code: str,
    registration: ClientRegistration,
    pkce: PendingPKCE,
    resource: str | None,
) -> dict[str, str]:
    form: dict[str, str] = {
        "grant_type": "authorization_code",
        "code": code,
        "client_id": registration.client_id,
        "redirect_uri": pkce.redirect_uri,
        "code_verifier": pkce.code_verifier,
    }
    if registration.client_secret:
        form["client_secret"] = registration.client_secret
    if resource:
        form["resource"] = resource
    return form


def refresh_form(
    *,
    tokens: TokenSet,
    registration: ClientRegistration | None,
    resource: str | None,
) -> dict[str, str]:
    if not tokens.refresh_token:
        raise TokenExchangeError("no refresh_token available", retryable=False)
    form: dict[str, str] = {
        "grant_type": "refresh_token",
        "refresh_token": tokens.refresh_token,
        "client_id": registration.client_id if registration else tokens.client_id,
    }
    if registration is not None and registration.client_secret:
        form["client_secret"] = registration.client_secret
    if resource:
        form["resource"] = resource
    return form


def prepare_token_request(token_endpoint: str, form: dict[str, str]) -> RequestRecord:
    return RequestRecord(
        method="POST",
        url=token_endpoint,
        headers={"Accept": "application/json", "Content-Type": FORM_CONTENT_TYPE},
        body=urlparse.urlencode(form),
    )


def send_token_request(
    client: CapturingClient,
    request: RequestRecord,
    *,
    client_id: str,
    previous_refresh_token: str | None = None,
    action: str = "token exchange",
    now: int | None = None,
) -> TokenSet:
    form = dict(urlparse.parse_qsl(request.body or "", keep_blank_values=True))
    LOGGER.info(
        "token.request grant_type=%s form_keys=%s",
        form.get("grant_type"),
        ",".join(sorted(form)),
    )
    try:
        response = client.send(request.method, request.url, form=form)
    except TransportError as exc:
        raise TokenExchangeError(f"{action} failed: {exc}") from None

    payload = response.json()
    if not response.ok:
        raise TokenExchangeError.from_oauth_payload(
            payload, status=response.status, action=action
        )
    try:
        return TokenSet.from_token_response(
            payload,
            client_id=client_id,
            previous_refresh_token=previous_refresh_token,
            now=now,
        )
    except ValueError as exc:
        raise TokenExchangeError(f"{action} failed: {exc}") from None


def refresh_tokens(
    client: CapturingClient,
    *,
    token_endpoint: str,
    tokens: TokenSet,
    registration: ClientRegistration | None,
    resource: str | None,
    now: int | None = None,
) -> TokenSet:
    request = prepare_token_request(
        token_endpoint,
        refresh_form(tokens=tokens, registration=registration, resource=resource),
    )
    return send_token_request(
        client,
        request,
        client_id=tokens.client_id,
        previous_refresh_token=tokens.refresh_token,
        action="token refresh",
        now=now,
    )
