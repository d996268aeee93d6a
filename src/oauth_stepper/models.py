from __future__ import annotations

import dataclasses
import json
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Mapping, cast

from dataclasses_json import Undefined, dataclass_json

from .util.common import as_int, as_optional_str, as_str_list, now_epoch

# Refresh slightly early so a token is never presented right at expiry.
TOKEN_EXPIRY_SKEW_S = 30


class FlowStep(StrEnum):
    IDLE = "idle"
    SENT_UNAUTHENTICATED_REQUEST = "sent_unauthenticated_request"
    RECEIVED_401 = "received_401"
    REQUEST_RESOURCE_METADATA = "request_resource_metadata"
    RECEIVED_RESOURCE_METADATA = "received_resource_metadata"
    REQUEST_AUTHORIZATION_SERVER_METADATA = "request_authorization_server_metadata"
    RECEIVED_AUTHORIZATION_SERVER_METADATA = "received_authorization_server_metadata"
    REGISTER_CLIENT = "register_client"
    REDIRECT_TO_AUTHORIZE = "redirect_to_authorize"
    RECEIVED_CALLBACK = "received_callback"
    EXCHANGE_TOKEN = "exchange_token"
    AUTHORIZED = "authorized"
    ERROR = "error"


class StoreKind(StrEnum):
    TOKENS = "tokens"
    CLIENT_REGISTRATION = "client_registration"
    PKCE_VERIFIER = "pkce_verifier"
    PENDING_FLOW_MARKER = "pending_flow_marker"
    FLOW_SNAPSHOT = "flow_snapshot"


@dataclass_json(undefined=Undefined.EXCLUDE)
@dataclass(frozen=True, slots=True)
class ResourceMetadata:
    resource: str
    authorization_servers: list[str] = field(default_factory=list)
    scopes_supported: list[str] = field(default_factory=list)
    bearer_methods_supported: list[str] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: Any) -> ResourceMetadata:
        if not isinstance(payload, dict):
            raise ValueError("protected resource metadata must be a JSON object")
        resource = as_optional_str(payload.get("resource"))
        if not resource:
            raise ValueError("protected resource metadata missing resource")
        servers = as_str_list(payload.get("authorization_servers"))
        if not servers:
            raise ValueError("protected resource metadata lists no authorization_servers")
        return cls(
            resource=resource,
            authorization_servers=servers,
            scopes_supported=as_str_list(payload.get("scopes_supported")),
            bearer_methods_supported=as_str_list(
                payload.get("bearer_methods_supported")
            ),
        )


@dataclass_json(undefined=Undefined.EXCLUDE)
@dataclass(frozen=True, slots=True)
class AuthServerMetadata:
    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    registration_endpoint: str | None = None
    scopes_supported: list[str] = field(default_factory=list)
    code_challenge_methods_supported: list[str] = field(default_factory=list)
    grant_types_supported: list[str] = field(default_factory=list)
    client_id_metadata_document_supported: bool = False

    @classmethod
    def from_payload(cls, payload: Any, *, default_issuer: str) -> AuthServerMetadata:
        if not isinstance(payload, dict):
            raise ValueError("authorization server metadata must be a JSON object")
        authorization_endpoint = as_optional_str(payload.get("authorization_endpoint"))
        token_endpoint = as_optional_str(payload.get("token_endpoint"))
        if not authorization_endpoint:
            raise ValueError("authorization server metadata missing authorization_endpoint")
        if not token_endpoint:
            raise ValueError("authorization server metadata missing token_endpoint")
        return cls(
            issuer=as_optional_str(payload.get("issuer")) or default_issuer,
            authorization_endpoint=authorization_endpoint,
            token_endpoint=token_endpoint,
            registration_endpoint=as_optional_str(payload.get("registration_endpoint")),
            scopes_supported=as_str_list(payload.get("scopes_supported")),
            code_challenge_methods_supported=as_str_list(
                payload.get("code_challenge_methods_supported")
            ),
            grant_types_supported=as_str_list(payload.get("grant_types_supported")),
            client_id_metadata_document_supported=payload.get(
                "client_id_metadata_document_supported"
            )
            is True,
        )


@dataclass_json(undefined=Undefined.EXCLUDE)
@dataclass(frozen=True, slots=True)
class ClientRegistration:
    client_id: str
    redirect_uris: list[str]
    source: str
    client_secret: str | None = None
    client_secret_expires_at: int | None = None
    issued_at: int | None = None

    def is_usable_for(self, redirect_uri: str, *, now: int | None = None) -> bool:
        if redirect_uri not in self.redirect_uris:
            return False
        expires_at = self.client_secret_expires_at
        # RFC 7591: 0 means the secret never expires.
        if expires_at and (now if now is not None else now_epoch()) >= expires_at:
            return False
        return True


@dataclass_json(undefined=Undefined.EXCLUDE)
@dataclass(frozen=True, slots=True)
class PendingPKCE:
    code_verifier: str
    code_challenge: str
    state: str
    redirect_uri: str
    created_at: int
    expires_at: int
    code_challenge_method: str = "S256"

    def is_expired(self, *, now: int | None = None) -> bool:
        return (now if now is not None else now_epoch()) >= self.expires_at


@dataclass_json(undefined=Undefined.EXCLUDE)
@dataclass(frozen=True, slots=True)
class TokenSet:
    access_token: str
    client_id: str
    token_type: str = "Bearer"
    refresh_token: str | None = None
    expires_in: int | None = None
    expires_at: int | None = None
    scope: str | None = None
    obtained_at: int | None = None

    @classmethod
    def from_token_response(
        cls,
        payload: Any,
        *,
        client_id: str,
        previous_refresh_token: str | None = None,
        now: int | None = None,
    ) -> TokenSet:
        if not isinstance(payload, dict):
            raise ValueError("token response must be a JSON object")
        access_token = as_optional_str(payload.get("access_token"))
        if not access_token:
            raise ValueError("token response missing access_token")
        obtained_at = now if now is not None else now_epoch()
        expires_in = as_int(payload.get("expires_in"))
        return cls(
            access_token=access_token,
            client_id=client_id,
            token_type=as_optional_str(payload.get("token_type")) or "Bearer",
            # Servers may omit refresh_token on refresh; the old one stays valid then.
            refresh_token=as_optional_str(payload.get("refresh_token"))
            or previous_refresh_token,
            expires_in=expires_in,
            expires_at=obtained_at + expires_in if expires_in is not None else None,
            scope=as_optional_str(payload.get("scope")),
            obtained_at=obtained_at,
        )

    def is_expired(self, *, now: int | None = None) -> bool:
        if self.expires_at is None:
            return False
        current = now if now is not None else now_epoch()
        return current + TOKEN_EXPIRY_SKEW_S >= self.expires_at


@dataclass_json(undefined=Undefined.EXCLUDE)
@dataclass(frozen=True, slots=True)
class RequestRecord:
    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    body: str | None = None


@dataclass_json(undefined=Undefined.EXCLUDE)
@dataclass(frozen=True, slots=True)
class ResponseRecord:
    status: int
    reason: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    body: str | None = None

    def json(self) -> Any:
        if not self.body:
            return None
        try:
            return json.loads(self.body)
        except json.JSONDecodeError:
            return None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def header(self, name: str) -> str | None:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None


@dataclass_json(undefined=Undefined.EXCLUDE)
@dataclass(frozen=True, slots=True)
class HttpExchange:
    step: str
    request: RequestRecord
    response: ResponseRecord | None = None
    error: str | None = None
    started_at: float = 0.0
    elapsed_ms: int = 0


@dataclass_json(undefined=Undefined.EXCLUDE)
@dataclass(frozen=True, slots=True)
class CallbackParams:
    code: str | None = None
    state: str | None = None
    error: str | None = None
    error_description: str | None = None
    error_uri: str | None = None
    iss: str | None = None
    received_at: int | None = None


@dataclass_json(undefined=Undefined.EXCLUDE)
@dataclass(frozen=True, slots=True)
class FlowErrorInfo:
    category: str
    message: str
    step: str
    retryable: bool
    oauth_error: str | None = None
    guidance: str | None = None
    record_index: int | None = None


@dataclass_json(undefined=Undefined.EXCLUDE)
@dataclass(frozen=True, slots=True)
class PendingFlowMarker:
    server_id: str
    server_url: str
    protocol_version: str
    registration_strategy: str
    state: str
    created_at: int
    expires_at: int
    snapshot: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class FlowState:
    """Immutable snapshot of one authorization flow.

    Never mutated in place: each transition produces a new instance through
    :meth:`apply`, which only accepts fields the transition names explicitly.
    """

    server_url: str
    protocol_version: str
    registration_strategy: str
    step: FlowStep = FlowStep.IDLE
    probe_status: int | None = None
    www_authenticate: str | None = None
    challenge_params: dict[str, str] = field(default_factory=dict)
    resource_metadata_urls: tuple[str, ...] = ()
    resource_metadata: ResourceMetadata | None = None
    resource_metadata_url: str | None = None
    authorization_server_url: str | None = None
    authorization_server_metadata_urls: tuple[str, ...] = ()
    authorization_server_metadata: AuthServerMetadata | None = None
    metadata_source: str | None = None
    client_registration: ClientRegistration | None = None
    pending_pkce: PendingPKCE | None = None
    authorization_url: str | None = None
    parked_at: int | None = None
    callback: CallbackParams | None = None
    token_request: RequestRecord | None = None
    tokens: TokenSet | None = None
    error: FlowErrorInfo | None = None
    failed_step: FlowStep | None = None
    records: tuple[HttpExchange, ...] = ()
    in_flight: bool = False

    def apply(self, patch: Mapping[str, Any]) -> FlowState:
        unknown = set(patch) - _FLOW_STATE_FIELDS
        if unknown:
            raise ValueError(f"unknown flow state fields: {', '.join(sorted(unknown))}")
        return dataclasses.replace(self, **dict(patch))

    def with_records(self, records: tuple[HttpExchange, ...] | list[HttpExchange]) -> FlowState:
        if not records:
            return self
        return dataclasses.replace(self, records=self.records + tuple(records))

    @property
    def is_parked(self) -> bool:
        return self.step is FlowStep.REDIRECT_TO_AUTHORIZE

    @property
    def is_fatal(self) -> bool:
        return self.step is FlowStep.ERROR and (
            self.error is None or not self.error.retryable
        )


_FLOW_STATE_FIELDS = frozenset(f.name for f in dataclasses.fields(FlowState))


def flow_state_to_doc(state: FlowState) -> dict[str, Any]:
    def _dump(value: Any) -> Any:
        if value is None:
            return None
        return cast(Any, value).to_dict()

    return {
        "server_url": state.server_url,
        "protocol_version": state.protocol_version,
        "registration_strategy": state.registration_strategy,
        "step": state.step.value,
        "probe_status": state.probe_status,
        "www_authenticate": state.www_authenticate,
        "challenge_params": dict(state.challenge_params),
        "resource_metadata_urls": list(state.resource_metadata_urls),
        "resource_metadata": _dump(state.resource_metadata),
        "resource_metadata_url": state.resource_metadata_url,
        "authorization_server_url": state.authorization_server_url,
        "authorization_server_metadata_urls": list(
            state.authorization_server_metadata_urls
        ),
        "authorization_server_metadata": _dump(state.authorization_server_metadata),
        "metadata_source": state.metadata_source,
        "client_registration": _dump(state.client_registration),
        "pending_pkce": _dump(state.pending_pkce),
        "authorization_url": state.authorization_url,
        "parked_at": state.parked_at,
        "callback": _dump(state.callback),
        "token_request": _dump(state.token_request),
        "tokens": _dump(state.tokens),
        "error": _dump(state.error),
        "failed_step": state.failed_step.value if state.failed_step else None,
        "records": [_dump(record) for record in state.records],
    }


def flow_state_from_doc(doc: dict[str, Any]) -> FlowState:
    server_url = as_optional_str(doc.get("server_url"))
    protocol_version = as_optional_str(doc.get("protocol_version"))
    registration_strategy = as_optional_str(doc.get("registration_strategy"))
    if not server_url or not protocol_version or not registration_strategy:
        raise ValueError("invalid flow snapshot: missing server_url/protocol_version/registration_strategy")
    try:
        step = FlowStep(doc.get("step") or FlowStep.IDLE.value)
        failed_raw = doc.get("failed_step")
        failed_step = FlowStep(failed_raw) if failed_raw else None
    except ValueError:
        raise ValueError("invalid flow snapshot: unknown step") from None

    def _load(cls: type, value: Any) -> Any:
        if not isinstance(value, dict):
            return None
        return cast(Any, cls).from_dict(value)

    challenge_params = doc.get("challenge_params")
    records = doc.get("records")
    return FlowState(
        server_url=server_url,
        protocol_version=protocol_version,
        registration_strategy=registration_strategy,
        step=step,
        probe_status=as_int(doc.get("probe_status")),
        www_authenticate=as_optional_str(doc.get("www_authenticate")),
        challenge_params=dict(challenge_params) if isinstance(challenge_params, dict) else {},
        resource_metadata_urls=tuple(as_str_list(doc.get("resource_metadata_urls"))),
        resource_metadata=_load(ResourceMetadata, doc.get("resource_metadata")),
        resource_metadata_url=as_optional_str(doc.get("resource_metadata_url")),
        authorization_server_url=as_optional_str(doc.get("authorization_server_url")),
        authorization_server_metadata_urls=tuple(
            as_str_list(doc.get("authorization_server_metadata_urls"))
        ),
        authorization_server_metadata=_load(
            AuthServerMetadata, doc.get("authorization_server_metadata")
        ),
        metadata_source=as_optional_str(doc.get("metadata_source")),
        client_registration=_load(ClientRegistration, doc.get("client_registration")),
        pending_pkce=_load(PendingPKCE, doc.get("pending_pkce")),
        authorization_url=as_optional_str(doc.get("authorization_url")),
        parked_at=as_int(doc.get("parked_at")),
        callback=_load(CallbackParams, doc.get("callback")),
        token_request=_load(RequestRecord, doc.get("token_request")),
        tokens=_load(TokenSet, doc.get("tokens")),
        error=_load(FlowErrorInfo, doc.get("error")),
        failed_step=failed_step,
        records=tuple(
            _load(HttpExchange, record)
            for record in (records if isinstance(records, list) else [])
            if isinstance(record, dict)
        ),
    )
