from __future__ import annotations

import copy
import logging
import os
import threading
from pathlib import Path
from typing import Any, Protocol

from .models import StoreKind
from .util.json_file import read_json_object, update_json_object_locked

LOGGER = logging.getLogger("stepper.store")

STORE_DIR_ENV = "OAUTH_STEPPER_STORE_DIR"
DEFAULT_STORE_DIR = "~/.oauth-stepper"


class CredentialStore(Protocol):
    def get(self, server_id: str, kind: StoreKind) -> dict[str, Any] | None: ...

    def set(self, server_id: str, kind: StoreKind, value: dict[str, Any]) -> None: ...

    def remove(self, server_id: str, kind: StoreKind) -> None: ...

    def server_ids(self) -> list[str]: ...


class MemoryCredentialStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data: dict[str, dict[str, dict[str, Any]]] = {}

    def get(self, server_id: str, kind: StoreKind) -> dict[str, Any] | None:
        with self._lock:
            value = self._data.get(server_id, {}).get(StoreKind(kind).value)
            return copy.deepcopy(value) if value is not None else None

    def set(self, server_id: str, kind: StoreKind, value: dict[str, Any]) -> None:
        with self._lock:
            self._data.setdefault(server_id, {})[StoreKind(kind).value] = copy.deepcopy(value)

    def remove(self, server_id: str, kind: StoreKind) -> None:
        with self._lock:
            entries = self._data.get(server_id)
            if entries is None:
                return
            entries.pop(StoreKind(kind).value, None)
            if not entries:
                del self._data[server_id]

    def server_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._data)


class FileCredentialStore:
    """One ``<server_id>.json`` document per server, keyed by :class:`StoreKind`."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).expanduser()

    @classmethod
    def from_env(cls) -> FileCredentialStore:
        return cls(os.environ.get(STORE_DIR_ENV) or DEFAULT_STORE_DIR)

    def _path(self, server_id: str) -> Path:
        if not server_id or "/" in server_id or server_id.startswith("."):
            raise ValueError(f"invalid server id: {server_id!r}")
        return self.root / f"{server_id}.json"

    def _read(self, server_id: str) -> dict[str, Any]:
        path = self._path(server_id)
        if not path.exists():
            return {}
        return read_json_object(
            path,
            not_found_message=f"credential file not found: {path}",
            invalid_json_prefix=f"invalid JSON in credential file {path}",
            expected_object_message=f"credential file must contain a JSON object: {path}",
            read_error_prefix=f"unable to read credential file {path}",
        )

    def get(self, server_id: str, kind: StoreKind) -> dict[str, Any] | None:
        value = self._read(server_id).get(StoreKind(kind).value)
        return value if isinstance(value, dict) else None

    def set(self, server_id: str, kind: StoreKind, value: dict[str, Any]) -> None:
        key = StoreKind(kind).value

        def _mutate(doc: dict[str, Any]) -> None:
            doc[key] = value

        self._update(server_id, _mutate)
        LOGGER.info("store.set server_id=%s kind=%s", server_id, key)

    def remove(self, server_id: str, kind: StoreKind) -> None:
        key = StoreKind(kind).value
        path = self._path(server_id)
        if not path.exists():
            return

        def _mutate(doc: dict[str, Any]) -> None:
            doc.pop(key, None)

        remaining = self._update(server_id, _mutate)
        if not remaining:
            path.unlink(missing_ok=True)
            Path(f"{path}.lock").unlink(missing_ok=True)
        LOGGER.info("store.remove server_id=%s kind=%s", server_id, key)

    def server_ids(self) -> list[str]:
        if not self.root.is_dir():
            return []
        return sorted(path.stem for path in self.root.glob("*.json"))

    def _update(self, server_id: str, mutate: Any) -> dict[str, Any]:
        path = self._path(server_id)
        return update_json_object_locked(
            path,
            mutate,
            busy_message=f"credential file is locked by another process: {path}",
            invalid_json_prefix=f"invalid JSON in credential file {path}",
        )
