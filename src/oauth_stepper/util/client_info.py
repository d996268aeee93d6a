from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, cast

import json5
from dataclasses_json import Undefined, dataclass_json

from .common import as_optional_str
from .key_ref import KeyRefNotFoundError, extract_secret, is_key_ref, read_key_ref_value


@dataclass_json(undefined=Undefined.EXCLUDE)
@dataclass(frozen=True, slots=True)
class ClientInfo:
    id: str | None = None
    secret: str | None = None
    name: str | None = None
    metadata_url: str | None = None
    redirect_uri: str | None = None
    scope: str | None = None
    scopes: list[str] | None = None

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> ClientInfo:
        normalized_doc = dict(doc)
        aliases = {
            "id": "client_id",
            "secret": "client_secret",
            "name": "client_name",
            "metadata_url": "client_metadata_url",
        }
        for field_name, alias in aliases.items():
            if field_name not in normalized_doc and alias in normalized_doc:
                normalized_doc[field_name] = normalized_doc[alias]

        client_info = cast(ClientInfo, cast(Any, cls).from_dict(normalized_doc))
        client_info.validate()
        return client_info

    def to_doc(self) -> dict[str, Any]:
        return cast(dict[str, Any], cast(Any, self).to_dict())

    def validate(self) -> None:
        if self.secret and not self.id:
            raise ValueError("client info file secret/client_secret requires id/client_id")
        if self.metadata_url and (self.id or self.secret):
            raise ValueError(
                "client info file cannot combine metadata_url with id/client_id or secret/client_secret"
            )
        if self.metadata_url and not self.metadata_url.startswith("https://"):
            raise ValueError("client info file metadata_url must be an https:// URL")

    def registration_strategy(self) -> str:
        if self.metadata_url:
            return "cimd"
        if self.id:
            return "preregistered"
        return "dcr"

    def resolved_scope(self) -> str | None:
        if self.scope is not None:
            return as_optional_str(self.scope)
        if isinstance(self.scopes, list):
            parts = [str(item).strip() for item in self.scopes if str(item).strip()]
            if parts:
                return " ".join(parts)
        return None

    def resolved_secret(self) -> str | None:
        if not self.secret:
            return None

        secret_spec = self.secret.strip()
        if not is_key_ref(secret_spec):
            return secret_spec

        try:
            payload = read_key_ref_value(secret_spec)
        except KeyRefNotFoundError:
            raise ValueError(f"client secret KEY_REF not found: {secret_spec}") from None

        extracted = extract_secret(payload)
        if extracted:
            return extracted
        raise ValueError(
            f"client secret KEY_REF must resolve to a string "
            f'or object with "secret"/"client_secret"/"value": {secret_spec}'
        )


def read_client_info(path: str | None) -> ClientInfo:
    if not as_optional_str(path):
        return ClientInfo()

    assert path is not None
    try:
        raw = Path(path).read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ValueError(f"client info file not found: {path}") from None
    except OSError as exc:
        raise ValueError(f"unable to read client info file: {exc}") from None

    try:
        payload = json5.loads(raw)
    except Exception as exc:
        raise ValueError(f"invalid client info JSON/JSON5: {exc}") from None

    if not isinstance(payload, dict):
        raise ValueError("client info file must contain a JSON object")
    return ClientInfo.from_doc(payload)
