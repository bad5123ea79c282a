import threading
import unittest
from datetime import datetime, timedelta, timezone
from unittest import mock

import requests

from idrac_discovery import inventory
from idrac_discovery.database import DsmClient, DsmError
from idrac_discovery.inventory import (
    InMemoryInventoryStore,
    InventoryMerger,
    PostgrestInventoryStore,
    merge_record,
    record_from_row,
    row_from_record,
)
from idrac_discovery.models import (
    PROTOCOL_PRIORITY,
    ComplianceSnapshot,
    HostDiscoveryResult,
    Protocol,
    ProtocolCapability,
    ProtocolStatus,
    Readiness,
)

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def capability(protocol, at, healthy=True):
    return ProtocolCapability(
        protocol=protocol,
        priority=PROTOCOL_PRIORITY[protocol],
        supported=healthy,
        status=ProtocolStatus.HEALTHY if healthy else ProtocolStatus.UNREACHABLE,
        checked_at=at,
    )


def result(address="10.0.0.1", at=T0, protocols=(Protocol.REDFISH, Protocol.WSMAN), **fields):
    fields.setdefault("model", "PowerEdge R740")
    fields.setdefault("service_tag", "ABC1234")
    caps = [capability(p, at) for p in protocols]
    healthiest = min(caps, key=lambda c: c.priority) if caps else None
    return HostDiscoveryResult(address=address, protocols=caps, healthiest_protocol=healthiest,
                               discovered_at=at, **fields)


class MergeRecordTests(unittest.TestCase):
    def test_insert(self):
        record, outcome = merge_record(None, result())

        self.assertEqual(outcome, "inserted")
        self.assertEqual(record.healthiest_protocol, Protocol.REDFISH)
        self.assertEqual(record.first_seen_at, T0)

    def test_same_result_twice_is_unchanged(self):
        first = result()
        record, _ = merge_record(None, first)

        again, outcome = merge_record(record, first)

        self.assertEqual(outcome, "unchanged")
        self.assertEqual(again.model_dump(), record.model_dump())

    def test_missing_protocol_kept_as_stale(self):
        """A protocol not re-probed keeps its last state but no longer counts as healthiest."""
        record, _ = merge_record(None, result())

        later = result(at=T0 + timedelta(hours=1), protocols=(Protocol.WSMAN,))
        merged, outcome = merge_record(record, later)

        self.assertEqual(outcome, "updated")
        by_protocol = {p.protocol: p for p in merged.protocols}
        self.assertEqual(set(by_protocol), {Protocol.REDFISH, Protocol.WSMAN})
        self.assertTrue(by_protocol[Protocol.REDFISH].stale)
        self.assertFalse(by_protocol[Protocol.WSMAN].stale)
        self.assertEqual(merged.healthiest_protocol, Protocol.WSMAN)

    def test_last_discovery_wins_for_scalars(self):
        record, _ = merge_record(None, result(bios_version="2.10.0"))

        merged, _ = merge_record(record, result(at=T0 + timedelta(minutes=5), bios_version="2.19.1"))
        self.assertEqual(merged.bios_version, "2.19.1")

        older, _ = merge_record(merged, result(at=T0 - timedelta(days=1), bios_version="1.0.0"))
        self.assertEqual(older.bios_version, "2.19.1")
        self.assertEqual(older.discovered_at, T0 + timedelta(minutes=5))
        self.assertEqual(older.first_seen_at, T0)

    def test_missing_scalar_does_not_erase(self):
        record, _ = merge_record(None, result(hostname="esx01"))

        merged, _ = merge_record(record, result(at=T0 + timedelta(minutes=1), hostname=None))

        self.assertEqual(merged.hostname, "esx01")

    def test_compliance_replaced_by_newer(self):
        record, _ = merge_record(None, result(compliance=ComplianceSnapshot(readiness=Readiness.READY)))

        merged, _ = merge_record(record, result(
            at=T0 + timedelta(minutes=1),
            compliance=ComplianceSnapshot(readiness=Readiness.MAINTENANCE_REQUIRED, bios_outdated=True),
        ))

        self.assertEqual(merged.compliance.readiness, Readiness.MAINTENANCE_REQUIRED)


class InventoryMergerTests(unittest.TestCase):
    def test_merge_summary(self):
        merger = InventoryMerger()

        first = merger.merge([result("10.0.0.1"), result("10.0.0.2", service_tag="DEF5678")])
        second = merger.merge([result("10.0.0.1"), result("10.0.0.2", service_tag="DEF5678",
                                                          at=T0 + timedelta(minutes=1), model="PowerEdge R750")])

        self.assertEqual((first.inserted, first.updated, first.unchanged), (2, 0, 0))
        self.assertEqual((second.inserted, second.updated, second.unchanged), (0, 1, 1))
        self.assertEqual(len(merger.store.all()), 2)

    def test_concurrent_merges_lose_nothing(self):
        store = InMemoryInventoryStore()
        merger = InventoryMerger(store)
        results = [result(at=T0 + timedelta(seconds=i), protocols=(protocol,))
                   for i, protocol in enumerate(PROTOCOL_PRIORITY)]
        barrier = threading.Barrier(len(results))

        def merge(one):
            barrier.wait()
            merger.merge_one(one)

        threads = [threading.Thread(target=merge, args=(r,)) for r in results]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        record = store.get("10.0.0.1")
        self.assertEqual({p.protocol for p in record.protocols}, set(PROTOCOL_PRIORITY))

    def test_failed_write_does_not_stop_merge(self):
        class UnavailableForOne(InMemoryInventoryStore):
            def put(self, record):
                if record.address == "10.0.0.2":
                    raise DsmError("Failed to upsert server 10.0.0.2: HTTP 503", 503)
                super().put(record)

        merger = InventoryMerger(UnavailableForOne())

        with self.assertLogs(inventory.logger, level="ERROR"):
            summary = merger.merge([result("10.0.0.1"), result("10.0.0.2", service_tag="DEF5678"),
                                    result("10.0.0.3", service_tag="GHI9012")])

        self.assertEqual((summary.inserted, summary.failed), (2, 1))
        self.assertEqual(sorted(r.address for r in merger.store.all()), ["10.0.0.1", "10.0.0.3"])

    def test_service_tag_drift_logged(self):
        merger = InventoryMerger()
        merger.merge([result("10.0.0.1")])

        with self.assertLogs(inventory.logger, level="WARNING") as logs:
            merger.merge([result("10.0.0.9")])

        self.assertIn("ABC1234", logs.output[0])
        self.assertEqual(len(merger.store.all()), 2)


class PostgrestInventoryStoreTests(unittest.TestCase):
    def test_row_conversion_keeps_protocols(self):
        record, _ = merge_record(None, result(compliance=ComplianceSnapshot(readiness=Readiness.READY)))

        row = row_from_record(record)
        restored = record_from_row(row)

        self.assertEqual(row["healthiest_protocol"], "REDFISH")
        self.assertEqual(row["connection_status"], "online")
        self.assertEqual([p.protocol for p in restored.protocols], [Protocol.REDFISH, Protocol.WSMAN])
        self.assertEqual(restored.compliance.readiness, Readiness.READY)
        self.assertEqual(restored.discovered_at, T0)

    def test_put_tags_discovery_job(self):
        client = mock.Mock()
        store = PostgrestInventoryStore(client, job_id="job-1")
        record, _ = merge_record(None, result())

        store.put(record)

        row = client.upsert_server.call_args[0][0]
        self.assertEqual(row["ip_address"], "10.0.0.1")
        self.assertEqual(row["discovery_job_id"], "job-1")

    def test_never_discovered_row_treated_as_new(self):
        client = mock.Mock()
        client.get_server.return_value = {"ip_address": "10.0.0.1", "last_discovered": None}

        self.assertIsNone(PostgrestInventoryStore(client).get("10.0.0.1"))

    @mock.patch("idrac_discovery.database.requests.post",
                side_effect=requests.exceptions.ConnectionError("Connection refused"))
    def test_upsert_transport_error_raises_dsm_error(self, post):
        client = DsmClient(url="https://dsm.example", service_role_key="key")

        with self.assertRaises(DsmError):
            client.upsert_server({"ip_address": "10.0.0.1"})


if __name__ == "__main__":
    unittest.main()
