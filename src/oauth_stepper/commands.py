from __future__ import annotations

import dataclasses
import logging
from typing import Any

from .callback import CallbackReceiver
from .capture import describe_state
from .config import FlowConfig
from .discovery import FallbackPolicy
from .flow import OAuthFlow, ResetScope, clear_stored_flow
from .models import FlowState, FlowStep, TokenSet
from .redirect import (
    DEFAULT_REDIRECT_URI,
    BrowserLauncher,
    LoopbackCallbackListener,
    PrintLauncher,
    WebbrowserLauncher,
    is_loopback_redirect,
    parse_callback_url,
)
from .store import CredentialStore, FileCredentialStore
from .transport import HttpTransport
from .util.client_info import read_client_info
from .util.common import iso_utc, now_epoch
from .util.key_ref import write_key_ref_value
from .versions import DEFAULT_PROTOCOL_VERSION

LOGGER = logging.getLogger("stepper.app")


def open_store(store_dir: str | None) -> FileCredentialStore:
    if store_dir:
        return FileCredentialStore(store_dir)
    return FileCredentialStore.from_env()


def _launcher(no_browser: bool) -> BrowserLauncher:
    return PrintLauncher() if no_browser else WebbrowserLauncher()


def start_flow(
    *,
    server_url: str,
    server_id: str | None = None,
    protocol_version: str | None = None,
    registration: str | None = None,
    client_info_file: str | None = None,
    scope: str | None = None,
    redirect_uri: str | None = None,
    auth_server: str | None = None,
    fallback: str | None = None,
    no_browser: bool = False,
    wait: bool = False,
    out_key_ref: str | None = None,
    overwrite: bool = False,
    store: CredentialStore | None = None,
    transport: HttpTransport | None = None,
    launcher: BrowserLauncher | None = None,
) -> dict[str, Any]:
    config = FlowConfig(
        server_url=server_url,
        server_id=server_id or "",
        protocol_version=protocol_version or DEFAULT_PROTOCOL_VERSION,
        redirect_uri=redirect_uri or DEFAULT_REDIRECT_URI,
        scope=scope,
        authorization_server=auth_server,
        fallback_policy=FallbackPolicy(fallback or FallbackPolicy.FAIL.value),
    )
    config = config.with_client_info(read_client_info(client_info_file)).with_env_overrides()
    if registration:
        config = dataclasses.replace(config, registration_strategy=registration)
    LOGGER.info(
        "app.flow_start server_id=%s version=%s registration=%s wait=%s",
        config.server_id,
        config.protocol_version,
        config.registration_strategy,
        wait,
    )
    store = store if store is not None else open_store(None)
    launcher = launcher or _launcher(no_browser)

    if not wait:
        flow = OAuthFlow(config, store=store, transport=transport, launcher=launcher, persist=True)
        flow.reset(ResetScope.VERIFIER)
        flow.start()
        return _report(flow, out_key_ref=out_key_ref, overwrite=overwrite)

    if not is_loopback_redirect(config.redirect_uri):
        raise ValueError(
            "--wait requires a loopback redirect URI (http://127.0.0.1:<port>/... or http://localhost:<port>/...)"
        )
    listener = LoopbackCallbackListener(config.redirect_uri)
    bound_redirect = listener.start()
    try:
        config = dataclasses.replace(config, redirect_uri=bound_redirect)
        flow = OAuthFlow(config, store=store, transport=transport, launcher=launcher, persist=True)
        flow.reset(ResetScope.VERIFIER)
        state = flow.start()
        if state.is_parked:
            _wait_for_redirect(flow, listener)
    finally:
        listener.stop()
    return _report(flow, out_key_ref=out_key_ref, overwrite=overwrite)


def _wait_for_redirect(flow: OAuthFlow, listener: LoopbackCallbackListener) -> FlowState:
    pkce = flow.state.pending_pkce
    assert pkce is not None
    try:
        url = listener.wait(max(pkce.expires_at - now_epoch(), 0))
    except TimeoutError:
        # The parked step reports the expired redirect itself.
        return flow.proceed()
    return flow.complete(parse_callback_url(url))


def step_flow(
    *,
    server_id: str,
    no_browser: bool = False,
    store: CredentialStore | None = None,
    transport: HttpTransport | None = None,
    launcher: BrowserLauncher | None = None,
) -> dict[str, Any]:
    store = store if store is not None else open_store(None)
    flow = OAuthFlow.resume(
        server_id,
        store,
        transport=transport,
        launcher=launcher or _launcher(no_browser),
        persist=True,
    )
    flow.proceed()
    return _report(flow)


def deliver_callback(
    *,
    url: str,
    out_key_ref: str | None = None,
    overwrite: bool = False,
    store: CredentialStore | None = None,
    transport: HttpTransport | None = None,
) -> dict[str, Any]:
    store = store if store is not None else open_store(None)
    receiver = CallbackReceiver(
        store,
        flow_factory=lambda server_id: OAuthFlow.resume(
            server_id, store, transport=transport, persist=True
        ),
    )
    flow = receiver.flow_for(receiver.resolve(parse_callback_url(url)))
    receiver.deliver(url)
    return _report(flow, out_key_ref=out_key_ref, overwrite=overwrite)


def flow_status(
    *, server_id: str, include_records: bool = False, store: CredentialStore | None = None
) -> dict[str, Any]:
    store = store if store is not None else open_store(None)
    flow = OAuthFlow.resume(server_id, store)
    return _report(flow, include_records=include_records, raise_on_error=False)


def refresh_flow(
    *,
    server_id: str,
    out_key_ref: str | None = None,
    overwrite: bool = False,
    store: CredentialStore | None = None,
    transport: HttpTransport | None = None,
) -> dict[str, Any]:
    store = store if store is not None else open_store(None)
    flow = OAuthFlow.resume(server_id, store, transport=transport, persist=True)
    flow.refresh()
    return _report(flow, out_key_ref=out_key_ref, overwrite=overwrite)


def reset_flow(
    *, server_id: str, scope: str = ResetScope.ALL.value, store: CredentialStore | None = None
) -> dict[str, Any]:
    store = store if store is not None else open_store(None)
    clear_stored_flow(store, server_id, scope)
    LOGGER.info("app.flow_reset server_id=%s scope=%s", server_id, scope)
    return {"server_id": server_id, "step": FlowStep.IDLE.value, "reset": ResetScope(scope).value}


def _report(
    flow: OAuthFlow,
    *,
    include_records: bool = False,
    out_key_ref: str | None = None,
    overwrite: bool = False,
    raise_on_error: bool = True,
) -> dict[str, Any]:
    state = flow.state
    if raise_on_error and state.step is FlowStep.ERROR and state.error is not None:
        message = f"{state.error.category}: {state.error.message}"
        if state.error.guidance:
            message = f"{message} ({state.error.guidance})"
        raise ValueError(message)

    result: dict[str, Any] = {"server_id": flow.server_id, "step": state.step.value}
    if state.is_parked and state.authorization_url:
        result["action"] = {"url": state.authorization_url}
    if state.step is FlowStep.AUTHORIZED and state.tokens is not None and out_key_ref:
        write_key_ref_value(out_key_ref, _token_payload(state.tokens), overwrite=overwrite)
        result["stored"] = out_key_ref
    result["flow"] = describe_state(state, include_records=include_records)
    return result


def _token_payload(tokens: TokenSet) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "access_token": tokens.access_token,
        "token_type": tokens.token_type,
    }
    if tokens.refresh_token:
        payload["refresh_token"] = tokens.refresh_token
    if tokens.scope:
        payload["scope"] = tokens.scope
    if tokens.expires_at is not None:
        payload["expires_at"] = iso_utc(tokens.expires_at)
    return payload
