"""Per-step actions of the authorization flow.

An action reads the current :class:`FlowState` plus its collaborators and
returns the patch for the next state. It never mutates state, and every field
the transition changes is named in the patch. An empty patch means "nothing
to do yet" (e.g. still waiting for the redirect).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, cast

from .capture import CapturingClient
from .config import FlowConfig, flow_snapshot_to_doc
from .discovery import (
    fetch_authorization_server_metadata,
    fetch_resource_metadata,
    parse_unauthorized,
    probe_server,
)
from .errors import (
    AuthorizationDeniedError,
    CallbackStateMismatchError,
    DiscoveryError,
    RedirectTimeoutError,
    TokenExchangeError,
)
from .models import (
    CallbackParams,
    ClientRegistration,
    FlowState,
    FlowStep,
    PendingFlowMarker,
    RequestRecord,
    StoreKind,
    TokenSet,
)
from .pkce import new_pending_pkce, states_match
from .redirect import BrowserLauncher, build_authorization_url
from .registration import metadata_document_client, preregistered_client, register_dynamic_client
from .store import CredentialStore
from .token import authorization_code_form, prepare_token_request, refresh_tokens, send_token_request
from .util.common import url_origin
from .versions import VersionAdapter

LOGGER = logging.getLogger("stepper.flow")

FlowPatch = dict[str, Any]


@dataclass(frozen=True, slots=True)
class StepContext:
    config: FlowConfig
    adapter: VersionAdapter
    http: CapturingClient
    store: CredentialStore
    launcher: BrowserLauncher
    now: int
    callback: CallbackParams | None = None
    force: bool = False


StepAction = Callable[[FlowState, StepContext], FlowPatch]


def _send_probe(state: FlowState, ctx: StepContext) -> FlowPatch:
    response = probe_server(
        ctx.http, state.server_url, protocol_version=state.protocol_version
    )
    return {
        "step": FlowStep.SENT_UNAUTHENTICATED_REQUEST,
        "probe_status": response.status,
        "www_authenticate": response.header("www-authenticate"),
    }


def _check_challenge(state: FlowState, ctx: StepContext) -> FlowPatch:
    status = state.probe_status
    www_authenticate = state.www_authenticate
    patch: FlowPatch = {"step": FlowStep.RECEIVED_401}
    if state.step is FlowStep.ERROR:
        # Retrying the 401 check is only meaningful against a fresh answer.
        response = probe_server(
            ctx.http, state.server_url, protocol_version=state.protocol_version
        )
        status = response.status
        www_authenticate = response.header("www-authenticate")
        patch.update(probe_status=status, www_authenticate=www_authenticate)
    patch["challenge_params"] = parse_unauthorized(status, www_authenticate)
    return patch


def _plan_resource_metadata(state: FlowState, ctx: StepContext) -> FlowPatch:
    urls = ctx.adapter.resource_metadata_urls(
        state.server_url, hinted=state.challenge_params.get("resource_metadata")
    )
    if not urls:
        raise DiscoveryError(f"cannot derive protected resource metadata URLs from {state.server_url}")
    return {
        "step": FlowStep.REQUEST_RESOURCE_METADATA,
        "resource_metadata_urls": tuple(urls),
    }


def _fetch_resource_metadata(state: FlowState, ctx: StepContext) -> FlowPatch:
    metadata, url = fetch_resource_metadata(ctx.http, state.resource_metadata_urls)
    chosen = metadata.authorization_servers[0]
    override = ctx.config.authorization_server
    if override:
        if override.rstrip("/") not in {s.rstrip("/") for s in metadata.authorization_servers}:
            LOGGER.warning(
                "flow.authorization_server override=%s not listed by resource metadata", override
            )
        chosen = override
    return {
        "step": FlowStep.RECEIVED_RESOURCE_METADATA,
        "resource_metadata": metadata,
        "resource_metadata_url": url,
        "authorization_server_url": chosen,
    }


def _plan_authorization_server_metadata(state: FlowState, ctx: StepContext) -> FlowPatch:
    issuer = (
        state.authorization_server_url
        or ctx.config.authorization_server
        or state.challenge_params.get("authorization_server")
        or url_origin(state.server_url)
    )
    if not issuer:
        raise DiscoveryError(f"cannot derive an authorization server for {state.server_url}")
    urls = ctx.adapter.authorization_server_metadata_urls(issuer, state.server_url)
    return {
        "step": FlowStep.REQUEST_AUTHORIZATION_SERVER_METADATA,
        "authorization_server_url": issuer,
        "authorization_server_metadata_urls": tuple(urls),
    }


def _fetch_authorization_server_metadata(state: FlowState, ctx: StepContext) -> FlowPatch:
    assert state.authorization_server_url is not None
    metadata, source = fetch_authorization_server_metadata(
        ctx.http,
        state.authorization_server_metadata_urls,
        issuer=state.authorization_server_url,
        fallback_policy=ctx.config.fallback_policy,
    )
    return {
        "step": FlowStep.RECEIVED_AUTHORIZATION_SERVER_METADATA,
        "authorization_server_metadata": metadata,
        "metadata_source": source,
    }


def _resolve_client(state: FlowState, ctx: StepContext) -> FlowPatch:
    metadata = state.authorization_server_metadata
    assert metadata is not None
    config = ctx.config
    strategy = ctx.adapter.registration_strategy

    if strategy == "preregistered":
        registration = preregistered_client(
            client_id=config.client_id,
            client_secret=config.client_secret,
            redirect_uri=config.redirect_uri,
        )
    elif strategy == "cimd":
        registration = metadata_document_client(
            metadata,
            metadata_url=config.client_metadata_url,
            redirect_uri=config.redirect_uri,
        )
    else:
        registration = _stored_registration(ctx)
        if registration is None:
            registration = register_dynamic_client(
                ctx.http,
                metadata,
                client_name=config.client_name,
                redirect_uri=config.redirect_uri,
                scope=config.scope,
                now=ctx.now,
            )
            ctx.store.set(
                config.server_id,
                StoreKind.CLIENT_REGISTRATION,
                cast(Any, registration).to_dict(),
            )
    return {"step": FlowStep.REGISTER_CLIENT, "client_registration": registration}


def _stored_registration(ctx: StepContext) -> ClientRegistration | None:
    doc = ctx.store.get(ctx.config.server_id, StoreKind.CLIENT_REGISTRATION)
    if doc is None:
        return None
    registration = cast(ClientRegistration, cast(Any, ClientRegistration).from_dict(doc))
    if registration.source != "dcr" or not registration.is_usable_for(
        ctx.config.redirect_uri, now=ctx.now
    ):
        LOGGER.info("flow.registration stored client unusable, registering again")
        return None
    LOGGER.info("flow.registration reuse client_id=%s", registration.client_id)
    return registration


def _request_scope(state: FlowState, ctx: StepContext) -> str | None:
    if ctx.config.scope:
        return ctx.config.scope
    challenged = state.challenge_params.get("scope")
    if challenged:
        return challenged
    if state.resource_metadata and state.resource_metadata.scopes_supported:
        return " ".join(state.resource_metadata.scopes_supported)
    return None


def _resource_indicator(state: FlowState) -> str | None:
    return state.resource_metadata.resource if state.resource_metadata else None


def _redirect_to_authorize(state: FlowState, ctx: StepContext) -> FlowPatch:
    metadata = state.authorization_server_metadata
    registration = state.client_registration
    assert metadata is not None and registration is not None
    pkce = new_pending_pkce(
        ctx.config.redirect_uri, ttl_s=ctx.config.redirect_timeout_s, now=ctx.now
    )
    authorization_url = build_authorization_url(
        authorization_endpoint=metadata.authorization_endpoint,
        registration=registration,
        pkce=pkce,
        scope=_request_scope(state, ctx),
        resource=_resource_indicator(state),
    )
    patch: FlowPatch = {
        "step": FlowStep.REDIRECT_TO_AUTHORIZE,
        "pending_pkce": pkce,
        "authorization_url": authorization_url,
        "parked_at": ctx.now,
    }
    parked = state.apply({**patch, "error": None, "failed_step": None, "in_flight": False})
    marker = PendingFlowMarker(
        server_id=ctx.config.server_id,
        server_url=state.server_url,
        protocol_version=state.protocol_version,
        registration_strategy=state.registration_strategy,
        state=pkce.state,
        created_at=pkce.created_at,
        expires_at=pkce.expires_at,
        snapshot=flow_snapshot_to_doc(ctx.config, parked),
    )
    # Both must be durable before the browser opens: the callback may reach a new process.
    ctx.store.set(ctx.config.server_id, StoreKind.PKCE_VERIFIER, cast(Any, pkce).to_dict())
    ctx.store.set(ctx.config.server_id, StoreKind.PENDING_FLOW_MARKER, cast(Any, marker).to_dict())
    LOGGER.info(
        "flow.redirect server_id=%s expires_at=%s", ctx.config.server_id, pkce.expires_at
    )
    ctx.launcher.open(authorization_url)
    return patch


def _accept_callback(state: FlowState, ctx: StepContext) -> FlowPatch:
    pkce = state.pending_pkce
    if pkce is None:
        raise CallbackStateMismatchError("no authorization request is pending for this flow")
    if pkce.is_expired(now=ctx.now):
        raise RedirectTimeoutError(
            f"authorization redirect not completed within {pkce.expires_at - pkce.created_at}s"
        )
    callback = ctx.callback
    if callback is None:
        return {}
    if not states_match(pkce.state, callback.state):
        raise CallbackStateMismatchError(
            "OAuth callback state mismatch; the redirect did not originate from this flow"
        )
    if callback.error:
        detail = callback.error
        if callback.error_description:
            detail = f"{detail}: {callback.error_description}"
        raise AuthorizationDeniedError(
            f"authorization failed: {detail}", oauth_error=callback.error
        )
    if not callback.code:
        raise AuthorizationDeniedError("OAuth callback missing authorization code")
    return {"step": FlowStep.RECEIVED_CALLBACK, "callback": callback}


def build_token_request(state: FlowState) -> RequestRecord:
    """The authorization_code grant for a flow holding its callback and verifier."""
    metadata = state.authorization_server_metadata
    registration = state.client_registration
    pkce = state.pending_pkce
    assert metadata is not None and registration is not None and pkce is not None
    assert state.callback is not None and state.callback.code is not None
    form = authorization_code_form(
        code=state.callback.code,
        registration=registration,
        pkce=pkce,
        resource=_resource_indicator(state),
    )
    return prepare_token_request(metadata.token_endpoint, form)


def _prepare_token_request(state: FlowState, ctx: StepContext) -> FlowPatch:
    return {"step": FlowStep.EXCHANGE_TOKEN, "token_request": build_token_request(state)}


def _exchange_token(state: FlowState, ctx: StepContext) -> FlowPatch:
    registration = state.client_registration
    assert registration is not None and state.token_request is not None
    tokens = send_token_request(
        ctx.http, state.token_request, client_id=registration.client_id, now=ctx.now
    )
    server_id = ctx.config.server_id
    ctx.store.set(server_id, StoreKind.TOKENS, cast(Any, tokens).to_dict())
    ctx.store.remove(server_id, StoreKind.PKCE_VERIFIER)
    ctx.store.remove(server_id, StoreKind.PENDING_FLOW_MARKER)
    return {"step": FlowStep.AUTHORIZED, "tokens": tokens, "pending_pkce": None}


def _refresh_if_needed(state: FlowState, ctx: StepContext) -> FlowPatch:
    tokens = state.tokens or _stored_tokens(ctx)
    if tokens is None:
        raise TokenExchangeError(
            "no tokens stored for this flow; reset and authorize again", retryable=False
        )
    if not ctx.force and not tokens.is_expired(now=ctx.now):
        if state.step is FlowStep.AUTHORIZED:
            return {}
        return {"step": FlowStep.AUTHORIZED, "tokens": tokens}
    if not tokens.refresh_token:
        raise TokenExchangeError(
            "access token expired and no refresh_token is available; reset and authorize again",
            retryable=False,
        )
    token_endpoint = (
        state.authorization_server_metadata.token_endpoint
        if state.authorization_server_metadata
        else None
    )
    if not token_endpoint:
        raise TokenExchangeError(
            "token endpoint unknown for this flow; reset and authorize again", retryable=False
        )
    refreshed = refresh_tokens(
        ctx.http,
        token_endpoint=token_endpoint,
        tokens=tokens,
        registration=state.client_registration,
        resource=_resource_indicator(state),
        now=ctx.now,
    )
    ctx.store.set(ctx.config.server_id, StoreKind.TOKENS, cast(Any, refreshed).to_dict())
    return {"step": FlowStep.AUTHORIZED, "tokens": refreshed}


def _stored_tokens(ctx: StepContext) -> TokenSet | None:
    doc = ctx.store.get(ctx.config.server_id, StoreKind.TOKENS)
    if doc is None:
        return None
    return cast(TokenSet, cast(Any, TokenSet).from_dict(doc))


def build_action_table(adapter: VersionAdapter) -> dict[FlowStep, StepAction]:
    """Map every non-terminal step of ``adapter`` to the action that leaves it."""
    table: dict[FlowStep, StepAction] = {
        FlowStep.IDLE: _send_probe,
        FlowStep.SENT_UNAUTHENTICATED_REQUEST: _check_challenge,
        FlowStep.RECEIVED_401: _plan_resource_metadata,
        FlowStep.REQUEST_RESOURCE_METADATA: _fetch_resource_metadata,
        FlowStep.RECEIVED_RESOURCE_METADATA: _plan_authorization_server_metadata,
        FlowStep.REQUEST_AUTHORIZATION_SERVER_METADATA: _fetch_authorization_server_metadata,
        FlowStep.RECEIVED_AUTHORIZATION_SERVER_METADATA: _resolve_client,
        FlowStep.REGISTER_CLIENT: _redirect_to_authorize,
        FlowStep.REDIRECT_TO_AUTHORIZE: _accept_callback,
        FlowStep.RECEIVED_CALLBACK: _prepare_token_request,
        FlowStep.EXCHANGE_TOKEN: _exchange_token,
        FlowStep.AUTHORIZED: _refresh_if_needed,
    }
    if not adapter.uses_resource_metadata:
        table[FlowStep.RECEIVED_401] = _plan_authorization_server_metadata
        del table[FlowStep.REQUEST_RESOURCE_METADATA]
        del table[FlowStep.RECEIVED_RESOURCE_METADATA]
    return {step: table[step] for step in adapter.steps}
