from __future__ import annotations

import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from oauth_stepper.models import StoreKind
from oauth_stepper.store import (
    DEFAULT_STORE_DIR,
    STORE_DIR_ENV,
    FileCredentialStore,
    MemoryCredentialStore,
)


class StoreContract:
    """Behaviour shared by every credential store."""

    def make_store(self):
        raise NotImplementedError

    def test_set_get_remove(self) -> None:
        store = self.make_store()
        self.assertIsNone(store.get("srv", StoreKind.TOKENS))

        store.set("srv", StoreKind.TOKENS, {"access_token": "a"})
        store.set("srv", StoreKind.PKCE_VERIFIER, {"code_verifier": "v"})

        self.assertEqual(store.get("srv", StoreKind.TOKENS), {"access_token": "a"})
        self.assertEqual(store.server_ids(), ["srv"])

        store.remove("srv", StoreKind.TOKENS)
        self.assertIsNone(store.get("srv", StoreKind.TOKENS))
        self.assertEqual(store.get("srv", StoreKind.PKCE_VERIFIER), {"code_verifier": "v"})

        store.remove("srv", StoreKind.PKCE_VERIFIER)
        self.assertEqual(store.server_ids(), [])

    def test_remove_missing_is_noop(self) -> None:
        store = self.make_store()
        store.remove("nobody", StoreKind.TOKENS)
        self.assertEqual(store.server_ids(), [])

    def test_entries_are_isolated_per_server(self) -> None:
        store = self.make_store()
        store.set("a", StoreKind.TOKENS, {"access_token": "1"})
        store.set("b", StoreKind.TOKENS, {"access_token": "2"})

        self.assertEqual(store.get("a", StoreKind.TOKENS), {"access_token": "1"})
        self.assertEqual(store.server_ids(), ["a", "b"])

    def test_values_are_copies(self) -> None:
        store = self.make_store()
        value = {"nested": {"k": 1}}
        store.set("srv", StoreKind.CLIENT_REGISTRATION, value)
        value["nested"]["k"] = 2

        got = store.get("srv", StoreKind.CLIENT_REGISTRATION)
        got["nested"]["k"] = 3

        self.assertEqual(store.get("srv", StoreKind.CLIENT_REGISTRATION), {"nested": {"k": 1}})


class MemoryCredentialStoreTest(StoreContract, unittest.TestCase):
    def make_store(self) -> MemoryCredentialStore:
        return MemoryCredentialStore()


class FileCredentialStoreTest(StoreContract, unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name) / "store"

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def make_store(self) -> FileCredentialStore:
        return FileCredentialStore(self.root)

    def test_document_layout(self) -> None:
        store = self.make_store()
        store.set("mcp.example.com-mcp", StoreKind.TOKENS, {"access_token": "a"})

        path = self.root / "mcp.example.com-mcp.json"
        self.assertEqual(json.loads(path.read_text(encoding="utf-8")), {"tokens": {"access_token": "a"}})
        self.assertEqual(os.stat(path).st_mode & 0o777, 0o600)

    def test_empty_document_is_deleted(self) -> None:
        store = self.make_store()
        store.set("srv", StoreKind.TOKENS, {"access_token": "a"})
        store.remove("srv", StoreKind.TOKENS)

        self.assertFalse((self.root / "srv.json").exists())
        self.assertFalse((self.root / "srv.json.lock").exists())

    def test_shared_between_instances(self) -> None:
        self.make_store().set("srv", StoreKind.PENDING_FLOW_MARKER, {"state": "s"})
        self.assertEqual(self.make_store().get("srv", StoreKind.PENDING_FLOW_MARKER), {"state": "s"})

    def test_rejects_path_like_server_ids(self) -> None:
        store = self.make_store()
        for server_id in ("", "../x", ".hidden", "a/b"):
            with self.assertRaises(ValueError):
                store.set(server_id, StoreKind.TOKENS, {})

    def test_corrupt_document(self) -> None:
        self.root.mkdir(parents=True)
        (self.root / "srv.json").write_text("{", encoding="utf-8")

        with self.assertRaisesRegex(ValueError, "invalid JSON in credential file"):
            self.make_store().get("srv", StoreKind.TOKENS)

    def test_from_env(self) -> None:
        with mock.patch.dict(os.environ, {STORE_DIR_ENV: str(self.root)}):
            self.assertEqual(FileCredentialStore.from_env().root, self.root)
        with mock.patch.dict(os.environ, {}, clear=True):
            self.assertEqual(
                FileCredentialStore.from_env().root, Path(DEFAULT_STORE_DIR).expanduser()
            )


if __name__ == "__main__":
    unittest.main()
