from __future__ import annotations

import unittest

from oauth_stepper.models import FlowStep
from oauth_stepper.versions import (
    FULL_STEPS,
    LEGACY_STEPS,
    SUPPORTED_VERSIONS,
    resolve_adapter,
)


class VersionAdapterTest(unittest.TestCase):
    def test_full_and_legacy_step_lists(self) -> None:
        self.assertEqual(FULL_STEPS[0], FlowStep.IDLE)
        self.assertEqual(FULL_STEPS[-1], FlowStep.AUTHORIZED)
        self.assertNotIn(FlowStep.ERROR, FULL_STEPS)
        self.assertEqual(len(LEGACY_STEPS), len(FULL_STEPS) - 2)
        self.assertNotIn(FlowStep.REQUEST_RESOURCE_METADATA, LEGACY_STEPS)
        self.assertNotIn(FlowStep.RECEIVED_RESOURCE_METADATA, LEGACY_STEPS)

    def test_every_version_resolves_with_dcr(self) -> None:
        for version in SUPPORTED_VERSIONS:
            adapter = resolve_adapter(version, "dcr")
            self.assertEqual(adapter.protocol_version, version)

    def test_next_step(self) -> None:
        default = resolve_adapter("2025-06-18", "dcr")
        legacy = resolve_adapter("2025-03-26", "dcr")

        self.assertEqual(default.next_step(FlowStep.RECEIVED_401), FlowStep.REQUEST_RESOURCE_METADATA)
        self.assertEqual(
            legacy.next_step(FlowStep.RECEIVED_401), FlowStep.REQUEST_AUTHORIZATION_SERVER_METADATA
        )
        self.assertEqual(default.next_step(FlowStep.AUTHORIZED), FlowStep.AUTHORIZED)
        with self.assertRaises(ValueError):
            legacy.next_step(FlowStep.REQUEST_RESOURCE_METADATA)

    def test_resource_metadata_urls(self) -> None:
        default = resolve_adapter("2025-06-18", "dcr")
        legacy = resolve_adapter("2025-03-26", "dcr")
        hint = "https://mcp.example.com/prm"

        self.assertEqual(
            default.resource_metadata_urls("https://mcp.example.com/mcp", hinted=hint)[0], hint
        )
        self.assertEqual(legacy.resource_metadata_urls("https://mcp.example.com/mcp"), [])

    def test_authorization_server_metadata_urls(self) -> None:
        default = resolve_adapter("2025-06-18", "dcr")
        legacy = resolve_adapter("2025-03-26", "dcr")

        self.assertEqual(
            default.authorization_server_metadata_urls(
                "https://auth.example.com/tenant", "https://mcp.example.com/mcp"
            )[0],
            "https://auth.example.com/.well-known/oauth-authorization-server/tenant",
        )
        self.assertEqual(
            legacy.authorization_server_metadata_urls("", "https://mcp.example.com/mcp"),
            ["https://mcp.example.com/.well-known/oauth-authorization-server"],
        )

    def test_registration_strategy_per_version(self) -> None:
        self.assertEqual(resolve_adapter("2025-11-25", "cimd").registration_strategy, "cimd")
        for version in ("2025-03-26", "2025-06-18"):
            with self.assertRaisesRegex(ValueError, "not supported by protocol version"):
                resolve_adapter(version, "cimd")
        with self.assertRaises(ValueError):
            resolve_adapter("2025-06-18", "magic")

    def test_unknown_version(self) -> None:
        with self.assertRaisesRegex(ValueError, "unsupported protocol version"):
            resolve_adapter("2024-11-05", "dcr")


if __name__ == "__main__":
    unittest.main()
