"""
Idempotent inventory merge.

Upsert key is the management address. Scalars follow last-discovery-wins by
discovered_at; protocol lists are union-merged so a protocol that was not
re-probed keeps its last known state, marked stale. Merging the same result
twice leaves the record unchanged.
"""

import logging
import threading
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from idrac_discovery.database import DsmClient, DsmError
from idrac_discovery.models import (
    PROTOCOL_PRIORITY,
    ComplianceSnapshot,
    HostDiscoveryResult,
    InventoryRecord,
    MergeSummary,
    ProtocolCapability,
    select_healthiest,
)

logger = logging.getLogger(__name__)

INSERTED = "inserted"
UPDATED = "updated"
UNCHANGED = "unchanged"

SCALAR_FIELDS = (
    "hostname",
    "model",
    "service_tag",
    "manufacturer",
    "bios_version",
    "idrac_version",
    "power_state",
    "credential_profile_id",
)


def _new_record(result: HostDiscoveryResult) -> InventoryRecord:
    protocols = [p.model_copy(update={"stale": False}) for p in result.protocols]
    healthiest = select_healthiest(protocols)
    return InventoryRecord(
        address=result.address,
        protocols=_sorted(protocols),
        healthiest_protocol=healthiest.protocol if healthiest else None,
        compliance=result.compliance,
        discovered_at=result.discovered_at,
        first_seen_at=result.discovered_at,
        **{name: getattr(result, name) for name in SCALAR_FIELDS},
    )


def _sorted(protocols: Iterable[ProtocolCapability]) -> List[ProtocolCapability]:
    return sorted(protocols, key=lambda p: PROTOCOL_PRIORITY[p.protocol])


def merge_protocols(existing: List[ProtocolCapability], incoming: List[ProtocolCapability],
                    incoming_is_newer: bool) -> List[ProtocolCapability]:
    """
    Union-merge protocol lists.

    A protocol present in both takes whichever entry has the later
    checked_at. A protocol only in existing is kept; it is marked stale when
    the incoming result is newer.
    """
    merged: Dict = {p.protocol: p for p in existing}
    for capability in incoming:
        current = merged.get(capability.protocol)
        if current is None or capability.checked_at >= current.checked_at:
            merged[capability.protocol] = capability.model_copy(update={"stale": False})

    incoming_protocols = {p.protocol for p in incoming}
    if incoming_is_newer:
        for protocol, capability in merged.items():
            if protocol not in incoming_protocols and not capability.stale:
                merged[protocol] = capability.model_copy(update={"stale": True})
    return _sorted(merged.values())


def merge_record(existing: Optional[InventoryRecord],
                 result: HostDiscoveryResult) -> Tuple[InventoryRecord, str]:
    """
    Merge one discovery result into the stored record.

    Returns:
        (record, outcome) where outcome is 'inserted', 'updated' or 'unchanged'
    """
    if existing is None:
        return _new_record(result), INSERTED

    newer = result.discovered_at >= existing.discovered_at
    updates = {}
    if newer:
        for name in SCALAR_FIELDS:
            value = getattr(result, name)
            if value is not None:
                updates[name] = value
        if result.compliance is not None:
            updates["compliance"] = result.compliance
        updates["discovered_at"] = result.discovered_at

    protocols = merge_protocols(existing.protocols, result.protocols, newer)
    healthiest = select_healthiest(protocols)
    updates["protocols"] = protocols
    updates["healthiest_protocol"] = healthiest.protocol if healthiest else None

    record = existing.model_copy(update=updates)
    if record.model_dump() == existing.model_dump():
        return existing, UNCHANGED
    return record, UPDATED


class InMemoryInventoryStore:
    """Process-local inventory keyed by address with per-address locks."""

    def __init__(self):
        self._records: Dict[str, InventoryRecord] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    def lock_for(self, address: str) -> threading.Lock:
        with self._lock:
            if address not in self._locks:
                self._locks[address] = threading.Lock()
            return self._locks[address]

    def get(self, address: str) -> Optional[InventoryRecord]:
        with self._lock:
            return self._records.get(address)

    def put(self, record: InventoryRecord) -> None:
        with self._lock:
            self._records[record.address] = record

    def addresses_for_service_tag(self, service_tag: str) -> List[str]:
        with self._lock:
            return [r.address for r in self._records.values() if r.service_tag == service_tag]

    def all(self) -> List[InventoryRecord]:
        with self._lock:
            return list(self._records.values())


class PostgrestInventoryStore:
    """
    Inventory rows in the DSM `servers` table, upserted on ip_address.

    Locks only serialize merges inside this process; the upsert itself is a
    single merge-duplicates write.
    """

    def __init__(self, client: Optional[DsmClient] = None, job_id: Optional[str] = None):
        self.client = client or DsmClient()
        self.job_id = job_id
        self._locks: Dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    def lock_for(self, address: str) -> threading.Lock:
        with self._lock:
            if address not in self._locks:
                self._locks[address] = threading.Lock()
            return self._locks[address]

    def get(self, address: str) -> Optional[InventoryRecord]:
        row = self.client.get_server(address)
        if not row or not row.get('last_discovered'):
            return None
        return record_from_row(row)

    def put(self, record: InventoryRecord) -> None:
        row = row_from_record(record)
        if self.job_id:
            row['discovery_job_id'] = self.job_id
        self.client.upsert_server(row)

    def addresses_for_service_tag(self, service_tag: str) -> List[str]:
        return [row['ip_address'] for row in self.client.find_servers_by_service_tag(service_tag)]


def row_from_record(record: InventoryRecord) -> Dict:
    """servers row for an inventory record"""
    return {
        'ip_address': record.address,
        'hostname': record.hostname,
        'model': record.model,
        'service_tag': record.service_tag,
        'manufacturer': record.manufacturer,
        'bios_version': record.bios_version,
        'idrac_version': record.idrac_version,
        'power_state': record.power_state,
        'protocol_capabilities': [p.model_dump(mode='json') for p in record.protocols],
        'healthiest_protocol': record.healthiest_protocol.value if record.healthiest_protocol else None,
        'firmware_compliance': record.compliance.model_dump(mode='json') if record.compliance else {},
        'credential_profile_id': record.credential_profile_id,
        'last_discovered': record.discovered_at.isoformat(),
        'last_protocol_check': record.discovered_at.isoformat(),
        'first_seen_at': record.first_seen_at.isoformat(),
        'connection_status': 'online' if record.healthiest_protocol else 'degraded',
    }


def record_from_row(row: Dict) -> InventoryRecord:
    discovered_at = _parse_time(row['last_discovered'])
    compliance = row.get('firmware_compliance') or None
    return InventoryRecord(
        address=row['ip_address'],
        hostname=row.get('hostname'),
        model=row.get('model'),
        service_tag=row.get('service_tag'),
        manufacturer=row.get('manufacturer'),
        bios_version=row.get('bios_version'),
        idrac_version=row.get('idrac_version'),
        power_state=row.get('power_state'),
        protocols=[ProtocolCapability(**p) for p in row.get('protocol_capabilities') or []],
        healthiest_protocol=row.get('healthiest_protocol'),
        compliance=ComplianceSnapshot(**compliance) if compliance else None,
        credential_profile_id=row.get('credential_profile_id'),
        discovered_at=discovered_at,
        first_seen_at=_parse_time(row.get('first_seen_at')) if row.get('first_seen_at') else discovered_at,
    )


def _parse_time(value: str) -> datetime:
    return datetime.fromisoformat(value.replace('Z', '+00:00'))


class InventoryMerger:
    def __init__(self, store=None):
        self.store = store if store is not None else InMemoryInventoryStore()

    def merge(self, results: Iterable[HostDiscoveryResult]) -> MergeSummary:
        """
        Merge results into the store.

        Safe to call from several threads at once: each address is merged
        under its own lock, so concurrent merges never lose a protocol entry.
        A record the store fails to read or write is counted as failed and the
        rest are still merged.
        """
        summary = MergeSummary()
        for result in results:
            try:
                outcome = self.merge_one(result)
            except DsmError as e:
                logger.error(f"Inventory merge failed for {result.address}: {e}")
                summary.failed += 1
                continue
            setattr(summary, outcome, getattr(summary, outcome) + 1)
        logger.info(f"Inventory merge: {summary.inserted} inserted, {summary.updated} updated, "
                    f"{summary.unchanged} unchanged, {summary.failed} failed")
        return summary

    def merge_one(self, result: HostDiscoveryResult) -> str:
        with self.store.lock_for(result.address):
            existing = self.store.get(result.address)
            record, outcome = merge_record(existing, result)
            if outcome != UNCHANGED:
                self._check_identity_drift(record)
                self.store.put(record)
        return outcome

    def _check_identity_drift(self, record: InventoryRecord) -> None:
        if not record.service_tag:
            return
        others = [a for a in self.store.addresses_for_service_tag(record.service_tag) if a != record.address]
        if others:
            logger.warning(
                f"Service tag {record.service_tag} now answers at {record.address}; "
                f"also recorded at {', '.join(others)}"
            )
