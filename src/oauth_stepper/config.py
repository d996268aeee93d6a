from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass, replace
from typing import Any, Mapping, cast

from dataclasses_json import Undefined, dataclass_json

from .capture import scrub_exchange
from .discovery import FallbackPolicy
from .models import FlowState, flow_state_from_doc, flow_state_to_doc
from .redirect import DEFAULT_REDIRECT_URI
from .transport import DEFAULT_HTTP_TIMEOUT_S
from .util.client_info import ClientInfo
from .util.common import normalize_url, server_id_from_url
from .versions import DEFAULT_PROTOCOL_VERSION

HTTP_TIMEOUT_ENV = "OAUTH_STEPPER_HTTP_TIMEOUT"
REDIRECT_TIMEOUT_ENV = "OAUTH_STEPPER_REDIRECT_TIMEOUT"
DEFAULT_REDIRECT_TIMEOUT_S = 300.0
DEFAULT_CLIENT_NAME = "oauth-stepper"
SNAPSHOT_VERSION = 1


@dataclass_json(undefined=Undefined.EXCLUDE)
@dataclass(frozen=True, slots=True)
class FlowConfig:
    server_url: str
    server_id: str = ""
    protocol_version: str = DEFAULT_PROTOCOL_VERSION
    registration_strategy: str = "dcr"
    client_name: str = DEFAULT_CLIENT_NAME
    redirect_uri: str = DEFAULT_REDIRECT_URI
    scope: str | None = None
    authorization_server: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    client_metadata_url: str | None = None
    fallback_policy: FallbackPolicy = FallbackPolicy.FAIL
    http_timeout_s: float = DEFAULT_HTTP_TIMEOUT_S
    redirect_timeout_s: float = DEFAULT_REDIRECT_TIMEOUT_S

    def __post_init__(self) -> None:
        object.__setattr__(self, "server_url", normalize_url(self.server_url, field="server_url"))
        if not self.server_id:
            object.__setattr__(self, "server_id", server_id_from_url(self.server_url))
        if self.authorization_server:
            object.__setattr__(
                self,
                "authorization_server",
                normalize_url(self.authorization_server, field="authorization_server"),
            )
        object.__setattr__(self, "fallback_policy", FallbackPolicy(self.fallback_policy))
        if self.http_timeout_s <= 0 or self.redirect_timeout_s <= 0:
            raise ValueError("timeouts must be positive numbers of seconds")

    @classmethod
    def from_doc(cls, doc: Mapping[str, Any]) -> FlowConfig:
        known = {f.name for f in dataclasses.fields(cls)}
        return cls(**{key: value for key, value in doc.items() if key in known})

    def to_doc(self) -> dict[str, Any]:
        doc = cast(dict[str, Any], cast(Any, self).to_dict())
        doc["fallback_policy"] = self.fallback_policy.value
        return doc

    def with_client_info(self, info: ClientInfo) -> FlowConfig:
        """Overlay a client identity file; its identity decides the registration strategy."""
        return replace(
            self,
            registration_strategy=info.registration_strategy()
            if info.id or info.metadata_url
            else self.registration_strategy,
            client_id=info.id or self.client_id,
            client_secret=info.resolved_secret() or self.client_secret,
            client_metadata_url=info.metadata_url or self.client_metadata_url,
            client_name=info.name or self.client_name,
            redirect_uri=info.redirect_uri or self.redirect_uri,
            scope=self.scope or info.resolved_scope(),
        )

    def with_env_overrides(self, environ: Mapping[str, str] | None = None) -> FlowConfig:
        env = os.environ if environ is None else environ
        return replace(
            self,
            http_timeout_s=_env_seconds(env, HTTP_TIMEOUT_ENV, self.http_timeout_s),
            redirect_timeout_s=_env_seconds(env, REDIRECT_TIMEOUT_ENV, self.redirect_timeout_s),
        )


def _env_seconds(env: Mapping[str, str], name: str, default: float) -> float:
    raw = (env.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number of seconds, got {raw!r}") from None
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {raw!r}")
    return value


def flow_snapshot_to_doc(config: FlowConfig, state: FlowState) -> dict[str, Any]:
    state_doc = flow_state_to_doc(state)
    # Secrets live under their own store kinds; snapshots only keep what status may show.
    state_doc["pending_pkce"] = None
    state_doc["token_request"] = None
    state_doc["tokens"] = None
    state_doc["records"] = [cast(Any, scrub_exchange(record)).to_dict() for record in state.records]
    return {"version": SNAPSHOT_VERSION, "config": config.to_doc(), "state": state_doc}


def flow_snapshot_from_doc(doc: Mapping[str, Any]) -> tuple[FlowConfig, FlowState]:
    if doc.get("version") != SNAPSHOT_VERSION:
        raise ValueError("unsupported flow snapshot version")
    config_doc = doc.get("config")
    state_doc = doc.get("state")
    if not isinstance(config_doc, dict) or not isinstance(state_doc, dict):
        raise ValueError("invalid flow snapshot: expected config and state objects")
    return FlowConfig.from_doc(config_doc), flow_state_from_doc(state_doc)
