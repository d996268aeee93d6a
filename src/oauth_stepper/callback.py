from __future__ import annotations

import logging
from typing import Any, Callable, cast

from .flow import OAuthFlow
from .models import CallbackParams, FlowState, PendingFlowMarker, StoreKind
from .pkce import states_match
from .redirect import parse_callback_url
from .store import CredentialStore
from .util.common import now_epoch

LOGGER = logging.getLogger("stepper.flow")


class CallbackReceiver:
    """Routes a redirect callback to the flow that is waiting for it.

    In-process flows are used directly once :meth:`register`-ed; any other
    pending flow is rebuilt from the store with ``flow_factory`` (by default
    :meth:`OAuthFlow.resume` with persistence on). Markers past their
    ``expires_at`` are expired on sight and never receive a callback.
    """

    def __init__(
        self,
        store: CredentialStore,
        *,
        flow_factory: Callable[[str], OAuthFlow] | None = None,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self.store = store
        self._flows: dict[str, OAuthFlow] = {}
        self._flow_factory = flow_factory or (
            lambda server_id: OAuthFlow.resume(server_id, store, clock=clock, persist=True)
        )
        self._clock = clock or now_epoch
        self._expired: list[str] = []

    def register(self, flow: OAuthFlow) -> None:
        self._flows[flow.server_id] = flow

    def flow_for(self, server_id: str) -> OAuthFlow:
        flow = self._flows.get(server_id)
        if flow is None:
            flow = self._flow_factory(server_id)
            self._flows[server_id] = flow
        return flow

    def pending_markers(self) -> list[PendingFlowMarker]:
        now = self._clock()
        markers: list[PendingFlowMarker] = []
        for server_id in self.store.server_ids():
            doc = self.store.get(server_id, StoreKind.PENDING_FLOW_MARKER)
            if doc is None:
                continue
            marker = cast(PendingFlowMarker, cast(Any, PendingFlowMarker).from_dict(doc))
            if marker.expires_at <= now:
                self._expire(marker)
                continue
            markers.append(marker)
        return markers

    def _expire(self, marker: PendingFlowMarker) -> None:
        LOGGER.info(
            "callback.expire server_id=%s expires_at=%s", marker.server_id, marker.expires_at
        )
        try:
            flow = self.flow_for(marker.server_id)
        except ValueError as exc:
            LOGGER.warning("callback.expire server_id=%s not resumable: %s", marker.server_id, exc)
        else:
            if flow.state.is_parked:
                # The parked step fails an expired redirect and drops the pending artifacts.
                flow.proceed()
        self.store.remove(marker.server_id, StoreKind.PKCE_VERIFIER)
        self.store.remove(marker.server_id, StoreKind.PENDING_FLOW_MARKER)
        self._expired.append(marker.server_id)

    def resolve(self, params: CallbackParams) -> str:
        markers = self.pending_markers()
        for marker in markers:
            if states_match(marker.state, params.state):
                return marker.server_id
        # A lone pending flow still gets the callback so a forged state is reported on it.
        if len(markers) == 1:
            LOGGER.info("callback.resolve no state match, single pending flow=%s", markers[0].server_id)
            return markers[0].server_id
        if not markers and self._expired:
            raise ValueError(
                "authorization redirect expired for "
                f"{', '.join(sorted(set(self._expired)))}; start the flow again"
            )
        if not markers:
            raise ValueError("no pending authorization flow to receive this callback")
        raise ValueError("callback state does not match any pending authorization flow")

    def deliver(self, url: str, *, run_to_completion: bool = True) -> FlowState:
        params = parse_callback_url(url)
        server_id = self.resolve(params)
        flow = self.flow_for(server_id)
        LOGGER.info("callback.deliver server_id=%s", server_id)
        if run_to_completion:
            return flow.complete(params)
        return flow.proceed(params)
