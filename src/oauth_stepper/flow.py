"""Orchestrator for one server's authorization flow.

:class:`OAuthFlow` owns the current :class:`FlowState`, executes exactly one
step per :meth:`OAuthFlow.proceed` call, captures every HTTP exchange, and
persists what must survive the browser redirect.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from enum import StrEnum
from typing import Any, Callable, cast

from .capture import CapturingClient
from .config import FlowConfig, flow_snapshot_from_doc, flow_snapshot_to_doc
from .errors import FlowError
from .machine import StepContext, build_action_table, build_token_request
from .models import (
    CallbackParams,
    FlowState,
    FlowStep,
    PendingFlowMarker,
    PendingPKCE,
    StoreKind,
    TokenSet,
)
from .redirect import BrowserLauncher, WebbrowserLauncher
from .store import CredentialStore, MemoryCredentialStore
from .transport import HttpTransport, UrllibTransport
from .util.common import now_epoch
from .versions import resolve_adapter

LOGGER = logging.getLogger("stepper.flow")

# Steps at which the PKCE verifier must be present.
PKCE_STEPS = frozenset(
    {FlowStep.REDIRECT_TO_AUTHORIZE, FlowStep.RECEIVED_CALLBACK, FlowStep.EXCHANGE_TOKEN}
)


class ResetScope(StrEnum):
    ALL = "all"
    CLIENT = "client"
    TOKENS = "tokens"
    VERIFIER = "verifier"


def clear_stored_flow(
    store: CredentialStore, server_id: str, scope: ResetScope | str = ResetScope.ALL
) -> None:
    """Remove what a reset of ``scope`` discards; pending artifacts always go."""
    scope = ResetScope(scope)
    for kind in (
        StoreKind.PKCE_VERIFIER,
        StoreKind.PENDING_FLOW_MARKER,
        StoreKind.FLOW_SNAPSHOT,
    ):
        store.remove(server_id, kind)
    if scope in (ResetScope.TOKENS, ResetScope.ALL):
        store.remove(server_id, StoreKind.TOKENS)
    if scope in (ResetScope.CLIENT, ResetScope.ALL):
        store.remove(server_id, StoreKind.CLIENT_REGISTRATION)


class OAuthFlow:
    def __init__(
        self,
        config: FlowConfig,
        *,
        store: CredentialStore | None = None,
        transport: HttpTransport | None = None,
        launcher: BrowserLauncher | None = None,
        clock: Callable[[], int] | None = None,
        persist: bool = False,
        state: FlowState | None = None,
    ) -> None:
        self.config = config
        self.adapter = resolve_adapter(config.protocol_version, config.registration_strategy)
        self._actions = build_action_table(self.adapter)
        self.store = store if store is not None else MemoryCredentialStore()
        self.transport = transport if transport is not None else UrllibTransport()
        self.launcher = launcher if launcher is not None else WebbrowserLauncher()
        self.persist = persist
        self._clock = clock or now_epoch
        self._lock = threading.Lock()
        self._state = state if state is not None else self._initial_state()

    @property
    def server_id(self) -> str:
        return self.config.server_id

    @property
    def state(self) -> FlowState:
        return self._state

    def _initial_state(self) -> FlowState:
        return FlowState(
            server_url=self.config.server_url,
            protocol_version=self.config.protocol_version,
            registration_strategy=self.config.registration_strategy,
        )

    def start(self) -> FlowState:
        """Reuse stored valid tokens, else run discovery until the redirect parks the flow."""
        if self._state.step is FlowStep.IDLE:
            tokens = self._stored_tokens()
            if tokens is not None and not tokens.is_expired(now=self._clock()):
                LOGGER.info("flow.start server_id=%s reuse stored tokens", self.server_id)
                self._transition(
                    self._state, self._state.apply({"step": FlowStep.AUTHORIZED, "tokens": tokens})
                )
                return self._state
        return self.run_until_parked()

    def proceed(self, callback: CallbackParams | None = None, *, force: bool = False) -> FlowState:
        """Execute exactly the current step's work and return the resulting state.

        A call made while another one is running returns the current state
        untouched. After a fatal error this is a no-op until :meth:`reset`.
        """
        if not self._lock.acquire(blocking=False):
            LOGGER.info("flow.busy server_id=%s step=%s", self.server_id, self._state.step.value)
            return self._state
        try:
            return self._proceed_locked(callback, force=force)
        finally:
            if self._state.in_flight:
                self._state = self._state.apply({"in_flight": False})
            self._lock.release()

    def _proceed_locked(self, callback: CallbackParams | None, *, force: bool) -> FlowState:
        state = self._state
        if state.is_fatal:
            LOGGER.info("flow.halted server_id=%s reset required", self.server_id)
            return state
        step = state.failed_step if state.step is FlowStep.ERROR else state.step
        assert step is not None
        if callback is not None and step is not FlowStep.REDIRECT_TO_AUTHORIZE:
            raise ValueError(
                f"flow is not waiting for an authorization callback (step={step.value})"
            )

        action = self._actions[step]
        self._state = state.apply({"in_flight": True})
        http = CapturingClient(self.transport, step=step.value, timeout_s=self.config.http_timeout_s)
        ctx = StepContext(
            config=self.config,
            adapter=self.adapter,
            http=http,
            store=self.store,
            launcher=self.launcher,
            now=self._clock(),
            callback=callback,
            force=force,
        )
        try:
            patch = action(state, ctx)
        except FlowError as exc:
            recorded = state.with_records(http.exchanges)
            return self._fail(recorded, step, exc, triggered=bool(http.exchanges))

        recorded = state.with_records(http.exchanges)
        if not patch:
            self._state = recorded.apply({"in_flight": False})
            return self._state

        expected = self.adapter.next_step(step)
        if patch.get("step") is not expected:
            raise AssertionError(
                f"step {step.value} produced {patch.get('step')}, expected {expected.value}"
            )
        if state.step is FlowStep.ERROR:
            patch = {"error": None, "failed_step": None, **patch}
        self._transition(state, recorded.apply({**patch, "in_flight": False}))
        return self._state

    def _transition(self, previous: FlowState, new_state: FlowState) -> None:
        LOGGER.info(
            "flow.step server_id=%s from=%s to=%s records=%s",
            self.server_id,
            previous.step.value,
            new_state.step.value,
            len(new_state.records),
        )
        self._state = new_state
        self._persist()

    def _fail(
        self, state: FlowState, step: FlowStep, exc: FlowError, *, triggered: bool
    ) -> FlowState:
        info = exc.to_info(
            step=step.value,
            record_index=len(state.records) - 1 if triggered else None,
        )
        LOGGER.warning(
            "flow.error server_id=%s step=%s category=%s retryable=%s message=%s",
            self.server_id,
            step.value,
            info.category,
            info.retryable,
            info.message,
        )
        patch: dict[str, Any] = {
            "step": FlowStep.ERROR,
            "error": info,
            "failed_step": step,
            "tokens": None,
            "in_flight": False,
        }
        if not exc.retryable:
            patch["pending_pkce"] = None
            self._clear_pending()
        if step is FlowStep.AUTHORIZED and exc.oauth_error == "invalid_grant":
            self.store.remove(self.server_id, StoreKind.TOKENS)
        self._state = state.apply(patch)
        self._persist()
        return self._state

    def run_until_parked(self) -> FlowState:
        """Call :meth:`proceed` until the flow parks for the redirect, is authorized, or fails."""
        for _ in range(len(self.adapter.steps) + 1):
            before = self._state
            state = self.proceed()
            if state.step in (
                FlowStep.REDIRECT_TO_AUTHORIZE,
                FlowStep.AUTHORIZED,
                FlowStep.ERROR,
            ) or state == before:
                return state
        return self._state

    def complete(self, callback: CallbackParams) -> FlowState:
        """Deliver the redirect callback, then run the remaining steps to ``authorized``."""
        state = self.proceed(callback)
        while state.step in (FlowStep.RECEIVED_CALLBACK, FlowStep.EXCHANGE_TOKEN):
            state = self.proceed()
        return state

    def refresh(self) -> FlowState:
        state = self._state
        at_authorized = state.step is FlowStep.AUTHORIZED or (
            state.step is FlowStep.ERROR and state.failed_step is FlowStep.AUTHORIZED
        )
        if not at_authorized:
            raise ValueError(f"refresh requires an authorized flow (step={state.step.value})")
        return self.proceed(force=True)

    def reset(self, scope: ResetScope | str = ResetScope.ALL) -> FlowState:
        scope = ResetScope(scope)
        with self._lock:
            clear_stored_flow(self.store, self.server_id, scope)
            LOGGER.info(
                "flow.reset server_id=%s scope=%s from=%s",
                self.server_id,
                scope.value,
                self._state.step.value,
            )
            self._state = self._initial_state()
            return self._state

    def _clear_pending(self) -> None:
        self.store.remove(self.server_id, StoreKind.PKCE_VERIFIER)
        self.store.remove(self.server_id, StoreKind.PENDING_FLOW_MARKER)

    def _stored_tokens(self) -> TokenSet | None:
        doc = self.store.get(self.server_id, StoreKind.TOKENS)
        if doc is None:
            return None
        return cast(TokenSet, cast(Any, TokenSet).from_dict(doc))

    def _persist(self) -> None:
        if self.persist:
            self.store.set(
                self.server_id,
                StoreKind.FLOW_SNAPSHOT,
                flow_snapshot_to_doc(self.config, self._state),
            )

    @classmethod
    def resume(
        cls,
        server_id: str,
        store: CredentialStore,
        *,
        transport: HttpTransport | None = None,
        launcher: BrowserLauncher | None = None,
        clock: Callable[[], int] | None = None,
        persist: bool = False,
    ) -> OAuthFlow:
        """Rebuild a flow from the store, e.g. in the process that receives the redirect."""
        doc = store.get(server_id, StoreKind.FLOW_SNAPSHOT)
        if doc is None:
            marker_doc = store.get(server_id, StoreKind.PENDING_FLOW_MARKER)
            if marker_doc is None:
                raise ValueError(f"no persisted flow for server id: {server_id}")
            marker = cast(PendingFlowMarker, cast(Any, PendingFlowMarker).from_dict(marker_doc))
            doc = marker.snapshot
        config, state = flow_snapshot_from_doc(doc)
        if config.server_id != server_id:
            raise ValueError(f"persisted flow belongs to server id {config.server_id}, not {server_id}")

        current = state.failed_step if state.step is FlowStep.ERROR else state.step
        if current in PKCE_STEPS and not state.is_fatal:
            verifier = store.get(server_id, StoreKind.PKCE_VERIFIER)
            if verifier is None:
                raise ValueError(
                    f"pending flow for {server_id} has no stored PKCE verifier; reset and start again"
                )
            state = dataclasses.replace(
                state, pending_pkce=cast(PendingPKCE, cast(Any, PendingPKCE).from_dict(verifier))
            )
            if current is FlowStep.EXCHANGE_TOKEN:
                state = dataclasses.replace(state, token_request=build_token_request(state))
        if state.step is FlowStep.AUTHORIZED:
            tokens = store.get(server_id, StoreKind.TOKENS)
            if tokens is not None:
                state = dataclasses.replace(
                    state, tokens=cast(TokenSet, cast(Any, TokenSet).from_dict(tokens))
                )
        LOGGER.info("flow.resume server_id=%s step=%s", server_id, state.step.value)
        return cls(
            config,
            store=store,
            transport=transport,
            launcher=launcher,
            clock=clock,
            persist=persist,
            state=state,
        )
