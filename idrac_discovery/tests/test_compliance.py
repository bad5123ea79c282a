import unittest

from idrac_discovery.compliance import compare_versions, evaluate, evaluate_result, find_baseline, parse_version
from idrac_discovery.errors import ComplianceError
from idrac_discovery.models import (
    DellGeneration,
    FirmwareBaseline,
    HostDiscoveryResult,
    Protocol,
    ProtocolCapability,
    Readiness,
)

BASELINES = [
    FirmwareBaseline(model="PowerEdge R7", bios_version="2.10.0", idrac_version="6.10.30.00"),
    FirmwareBaseline(model="PowerEdge R740", bios_version="2.19.1", idrac_version="7.00.00.00"),
    FirmwareBaseline(model="PowerEdge R620", supported=False),
    FirmwareBaseline(model="*", bios_version="1.0.0", idrac_version="4.00.00.00",
                     minimum_generation=DellGeneration.G13),
]


class VersionTests(unittest.TestCase):
    def test_numeric_not_lexicographic(self):
        self.assertEqual(compare_versions("2.10.0", "2.9.3"), 1)
        self.assertEqual(compare_versions("2.9.3", "2.10.0"), -1)

    def test_zero_padding(self):
        self.assertEqual(compare_versions("2.1", "2.1.0.0"), 0)

    def test_parse_version(self):
        self.assertEqual(parse_version("2.70.70.70"), (2, 70, 70, 70))
        self.assertEqual(parse_version("1.2.3 (Build 4)"), (1, 2, 3, 4))

    def test_unparseable_version(self):
        with self.assertRaises(ComplianceError):
            parse_version("unknown")


class BaselineLookupTests(unittest.TestCase):
    def test_longest_prefix_wins(self):
        self.assertEqual(find_baseline("PowerEdge R740xd", BASELINES).model, "PowerEdge R740")
        self.assertEqual(find_baseline("poweredge r750", BASELINES).model, "PowerEdge R7")

    def test_catch_all(self):
        self.assertEqual(find_baseline("PowerEdge C6420", BASELINES).model, "*")
        self.assertEqual(find_baseline(None, BASELINES).model, "*")

    def test_no_baselines(self):
        self.assertIsNone(find_baseline("PowerEdge R740", []))


class EvaluateTests(unittest.TestCase):
    def test_ready(self):
        snapshot = evaluate("2.19.1", "7.00.00.00", BASELINES, model="PowerEdge R740")
        self.assertEqual(snapshot.readiness, Readiness.READY)
        self.assertEqual(snapshot.available_update_count, 0)

    def test_bios_outdated(self):
        snapshot = evaluate("2.9.3", "7.00.00.00", BASELINES, model="PowerEdge R740")

        self.assertTrue(snapshot.bios_outdated)
        self.assertFalse(snapshot.idrac_outdated)
        self.assertEqual(snapshot.available_update_count, 1)
        self.assertEqual(snapshot.readiness, Readiness.MAINTENANCE_REQUIRED)

    def test_outdated_idrac_only_still_requires_maintenance(self):
        snapshot = evaluate("2.19.1", "6.10.30.00", BASELINES, model="PowerEdge R740")
        self.assertTrue(snapshot.idrac_outdated)
        self.assertEqual(snapshot.readiness, Readiness.MAINTENANCE_REQUIRED)

    def test_unsupported_model(self):
        snapshot = evaluate("1.0", "2.0", BASELINES, model="PowerEdge R620")
        self.assertEqual(snapshot.readiness, Readiness.NOT_SUPPORTED)

    def test_below_minimum_generation(self):
        snapshot = evaluate("9.9.9", "9.00", BASELINES, model="PowerEdge T110", generation=DellGeneration.G11)
        self.assertEqual(snapshot.readiness, Readiness.NOT_SUPPORTED)

    def test_no_baseline(self):
        self.assertEqual(evaluate("1.0", "2.0", [], model="PowerEdge R740").readiness, Readiness.NOT_SUPPORTED)

    def test_missing_versions_are_not_outdated(self):
        snapshot = evaluate(None, None, BASELINES, model="PowerEdge R740")
        self.assertEqual(snapshot.readiness, Readiness.READY)

    def test_unparseable_reported_version(self):
        with self.assertRaises(ComplianceError):
            evaluate("n/a", "7.00.00.00", BASELINES, model="PowerEdge R740")

    def test_evaluate_result_uses_probe_generation(self):
        result = HostDiscoveryResult(
            address="10.0.0.1",
            model="PowerEdge R320",
            bios_version="2.0",
            idrac_version="2.65.65.65",
            protocols=[ProtocolCapability(protocol=Protocol.WSMAN, priority=2, supported=True,
                                          generation=DellGeneration.G12)],
        )

        snapshot = evaluate_result(result, BASELINES)

        self.assertEqual(snapshot.generation, DellGeneration.G12)
        self.assertEqual(snapshot.readiness, Readiness.NOT_SUPPORTED)


if __name__ == "__main__":
    unittest.main()
