"""MCP protocol-version variants of the authorization flow.

Each supported protocol version resolves to one frozen :class:`VersionAdapter`
that fixes the ordered step list, the allowed client registration strategies
and how authorization-server metadata URLs are derived.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from .models import FlowStep
from .util.oauth_discovery import (
    build_authorization_server_metadata_urls,
    build_legacy_authorization_server_metadata_urls,
    build_protected_resource_metadata_urls,
)

LEGACY_PROTOCOL_VERSION = "2025-03-26"
DEFAULT_PROTOCOL_VERSION = "2025-06-18"
CIMD_PROTOCOL_VERSION = "2025-11-25"
SUPPORTED_VERSIONS = (
    LEGACY_PROTOCOL_VERSION,
    DEFAULT_PROTOCOL_VERSION,
    CIMD_PROTOCOL_VERSION,
)

REGISTRATION_STRATEGIES = ("dcr", "preregistered", "cimd")

FULL_STEPS: tuple[FlowStep, ...] = (
    FlowStep.IDLE,
    FlowStep.SENT_UNAUTHENTICATED_REQUEST,
    FlowStep.RECEIVED_401,
    FlowStep.REQUEST_RESOURCE_METADATA,
    FlowStep.RECEIVED_RESOURCE_METADATA,
    FlowStep.REQUEST_AUTHORIZATION_SERVER_METADATA,
    FlowStep.RECEIVED_AUTHORIZATION_SERVER_METADATA,
    FlowStep.REGISTER_CLIENT,
    FlowStep.REDIRECT_TO_AUTHORIZE,
    FlowStep.RECEIVED_CALLBACK,
    FlowStep.EXCHANGE_TOKEN,
    FlowStep.AUTHORIZED,
)

LEGACY_STEPS: tuple[FlowStep, ...] = tuple(
    step
    for step in FULL_STEPS
    if step
    not in (FlowStep.REQUEST_RESOURCE_METADATA, FlowStep.RECEIVED_RESOURCE_METADATA)
)


def _legacy_as_urls(issuer: str, server_url: str) -> list[str]:
    # The hinted authorization server (or the origin) is the only place 2025-03-26 looks.
    return build_legacy_authorization_server_metadata_urls(issuer or server_url)


def _rfc8414_as_urls(issuer: str, server_url: str) -> list[str]:
    return build_authorization_server_metadata_urls(issuer)


@dataclass(frozen=True, slots=True)
class VersionAdapter:
    protocol_version: str
    registration_strategy: str
    steps: tuple[FlowStep, ...]
    registration_strategies: tuple[str, ...]
    uses_resource_metadata: bool
    build_as_metadata_urls: Callable[[str, str], list[str]]

    def next_step(self, step: FlowStep) -> FlowStep:
        if step is FlowStep.AUTHORIZED:
            return FlowStep.AUTHORIZED
        try:
            index = self.steps.index(step)
        except ValueError:
            raise ValueError(
                f"step {step.value} is not part of protocol version {self.protocol_version}"
            ) from None
        return self.steps[index + 1]

    def resource_metadata_urls(
        self, server_url: str, *, hinted: str | None = None
    ) -> list[str]:
        if not self.uses_resource_metadata:
            return []
        return build_protected_resource_metadata_urls(
            server_url, hinted_resource_metadata=hinted
        )

    def authorization_server_metadata_urls(self, issuer: str, server_url: str) -> list[str]:
        return self.build_as_metadata_urls(issuer, server_url)


_VARIANTS: dict[str, tuple[tuple[FlowStep, ...], tuple[str, ...], bool, Callable[[str, str], list[str]]]] = {
    LEGACY_PROTOCOL_VERSION: (LEGACY_STEPS, ("dcr", "preregistered"), False, _legacy_as_urls),
    DEFAULT_PROTOCOL_VERSION: (FULL_STEPS, ("dcr", "preregistered"), True, _rfc8414_as_urls),
    CIMD_PROTOCOL_VERSION: (
        FULL_STEPS,
        ("dcr", "preregistered", "cimd"),
        True,
        _rfc8414_as_urls,
    ),
}


def resolve_adapter(protocol_version: str, registration_strategy: str) -> VersionAdapter:
    variant = _VARIANTS.get(protocol_version)
    if variant is None:
        allowed = ", ".join(SUPPORTED_VERSIONS)
        raise ValueError(
            f"unsupported protocol version '{protocol_version}' (expected one of: {allowed})"
        )
    steps, strategies, uses_prm, as_urls = variant
    if registration_strategy not in strategies:
        raise ValueError(
            f"registration strategy '{registration_strategy}' is not supported by "
            f"protocol version {protocol_version} (expected one of: {', '.join(strategies)})"
        )
    return VersionAdapter(
        protocol_version=protocol_version,
        registration_strategy=registration_strategy,
        steps=steps,
        registration_strategies=strategies,
        uses_resource_metadata=uses_prm,
        build_as_metadata_urls=as_urls,
    )
