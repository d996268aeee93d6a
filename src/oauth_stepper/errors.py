"""Error categories surfaced on a failed flow.

Every category is a ``ValueError`` so callers (and the CLI) can treat them
like any other invalid-input failure; ``retryable`` tells the orchestrator
whether the failed step may be re-run by calling ``proceed()`` again.
"""

from __future__ import annotations

from typing import Any

from .models import FlowErrorInfo

TOKEN_ERROR_GUIDANCE = {
    "invalid_grant": (
        "The authorization code or refresh token is invalid, expired, or was "
        "already used. Reset the flow and authorize again."
    ),
    "invalid_client": (
        "The authorization server did not accept the client credentials. "
        "Verify the client_id (and secret) or reset the client registration."
    ),
    "unauthorized_client": (
        "This client is not allowed to use the requested grant. Check that the "
        "client_id is registered for this server and scope."
    ),
}

FATAL_TOKEN_ERRORS = frozenset(TOKEN_ERROR_GUIDANCE)


class FlowError(ValueError):
    category = "flow_error"
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        oauth_error: str | None = None,
        guidance: str | None = None,
        retryable: bool | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.oauth_error = oauth_error
        self.guidance = guidance
        if retryable is not None:
            self.retryable = retryable

    def to_info(self, *, step: str, record_index: int | None) -> FlowErrorInfo:
        return FlowErrorInfo(
            category=self.category,
            message=self.message,
            step=step,
            retryable=self.retryable,
            oauth_error=self.oauth_error,
            guidance=self.guidance,
            record_index=record_index,
        )


class DiscoveryError(FlowError):
    category = "discovery_error"


class RegistrationError(FlowError):
    category = "registration_error"


class RedirectTimeoutError(FlowError):
    category = "redirect_timeout_error"
    retryable = False


class AuthorizationDeniedError(FlowError):
    category = "authorization_denied_error"
    retryable = False


class CallbackStateMismatchError(FlowError):
    """The callback's ``state`` differs from the one sent; possible forgery."""

    category = "callback_state_mismatch_error"
    retryable = False


class TokenExchangeError(FlowError):
    category = "token_exchange_error"

    @classmethod
    def from_oauth_payload(
        cls, payload: Any, *, status: int | None, action: str
    ) -> TokenExchangeError:
        body = payload if isinstance(payload, dict) else {}
        oauth_error = body.get("error") if isinstance(body.get("error"), str) else None
        description = body.get("error_description")
        detail = description if isinstance(description, str) and description else oauth_error
        if detail:
            message = f"{action} failed: {detail}"
        else:
            message = f"{action} failed (HTTP {status})"
        return cls(
            message,
            oauth_error=oauth_error,
            guidance=TOKEN_ERROR_GUIDANCE.get(oauth_error or ""),
            # 5xx and unknown codes may be transient; the mapped codes never are.
            retryable=oauth_error not in FATAL_TOKEN_ERRORS,
        )


class TransportError(Exception):
    """Raised by an HTTP transport when no response was received."""
