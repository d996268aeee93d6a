from __future__ import annotations

import base64
import hashlib
import hmac
import secrets

from .models import PendingPKCE
from .util.common import now_epoch

# RFC 7636 section 4.1: unreserved characters, 43 to 128 long.
VERIFIER_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-._~"
MIN_VERIFIER_LENGTH = 43
MAX_VERIFIER_LENGTH = 128


def generate_code_verifier(length: int = 64) -> str:
    if not MIN_VERIFIER_LENGTH <= length <= MAX_VERIFIER_LENGTH:
        raise ValueError(
            f"code_verifier length must be {MIN_VERIFIER_LENGTH}..{MAX_VERIFIER_LENGTH}"
        )
    return "".join(secrets.choice(VERIFIER_ALPHABET) for _ in range(length))


def code_challenge_s256(verifier: str) -> str:
    return _b64url(hashlib.sha256(verifier.encode("ascii")).digest())


def generate_state() -> str:
    return secrets.token_urlsafe(24)


def states_match(expected: str | None, received: str | None) -> bool:
    if not expected or not received:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), received.encode("utf-8"))


def new_pending_pkce(
    redirect_uri: str, *, ttl_s: float, now: int | None = None
) -> PendingPKCE:
    created_at = now if now is not None else now_epoch()
    verifier = generate_code_verifier()
    return PendingPKCE(
        code_verifier=verifier,
        code_challenge=code_challenge_s256(verifier),
        state=generate_state(),
        redirect_uri=redirect_uri,
        created_at=created_at,
        expires_at=created_at + int(ttl_s),
    )


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")
