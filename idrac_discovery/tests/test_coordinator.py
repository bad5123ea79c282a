import threading
import time
import unittest
from unittest import mock

import requests

from idrac_discovery.cache import DiscoveryCache
from idrac_discovery.coordinator import DiscoveryCoordinator
from idrac_discovery.errors import CredentialConfigError, InvalidAddressSpaceError
from idrac_discovery.host_prober import HostProber
from idrac_discovery.models import (
    AddressSpaceSpec,
    CredentialPolicy,
    CredentialProfile,
    DiscoveryOptions,
    ErrorClass,
    FailureStage,
    FirmwareBaseline,
    HostDiscoveryResult,
    HostFacts,
    Protocol,
    Readiness,
    RunState,
    SkipReason,
)
from idrac_discovery.protocols import build_probes
from idrac_discovery.session_manager import SessionManager
from idrac_discovery.tests.fakes import ScriptedProbe, ScriptedRedfishProbe, candidate, policy_with_default

BASELINES = [FirmwareBaseline(model="PowerEdge R740", bios_version="2.19.1", idrac_version="7.00.00.00")]


def options(**overrides):
    values = {
        "concurrency": 4,
        "probe_timeout": 1.0,
        "protocols": [Protocol.REDFISH, Protocol.WSMAN],
        "baselines": BASELINES,
    }
    values.update(overrides)
    return DiscoveryOptions(**values)


class DiscoveryCoordinatorTests(unittest.TestCase):
    def setUp(self):
        self.redfish = ScriptedRedfishProbe({
            "10.0.0.1": "ok",
            "10.0.0.2": ErrorClass.TIMEOUT,
            "10.0.0.3": ErrorClass.AUTHENTICATION,
        })
        self.wsman = ScriptedProbe(Protocol.WSMAN, {
            "10.0.0.2": ErrorClass.TIMEOUT,
            "10.0.0.3": ErrorClass.AUTHENTICATION,
        })
        self.prober = HostProber({Protocol.REDFISH: self.redfish, Protocol.WSMAN: self.wsman},
                                 timeout=1.0, grace=0.5)
        self.events = []
        self.coordinator = DiscoveryCoordinator(prober=self.prober)

    def run_scan(self, spec=None, **kwargs):
        spec = spec or AddressSpaceSpec.from_range("10.0.0.1", "10.0.0.3")
        kwargs.setdefault("options", options())
        kwargs.setdefault("event_sink", self.events.append)
        return self.coordinator.run(spec, policy_with_default(), **kwargs)

    def test_mixed_outcomes(self):
        """One healthy, one unreachable and one rejecting host are each accounted for."""
        policy = policy_with_default()
        policy.manual_fallback = candidate()

        run = self.coordinator.run(AddressSpaceSpec.from_range("10.0.0.1", "10.0.0.3"), policy, options(),
                                   event_sink=self.events.append)
        summary = run.summary()

        self.assertEqual(summary.total, 3)
        self.assertEqual(summary.healthy, 1)
        self.assertEqual(summary.unreachable, 1)
        self.assertEqual(summary.auth_failed, 1)
        self.assertFalse(summary.cancelled)
        self.assertEqual(run.unreachable_count, 1)
        self.assertEqual(run.state, RunState.DONE)
        self.assertIsNotNone(run.completed_at)

        self.assertEqual([r.address for r in run.results], ["10.0.0.1"])
        self.assertEqual([(s.address, s.reason) for s in run.skipped],
                         [("10.0.0.2", SkipReason.UNREACHABLE), ("10.0.0.3", SkipReason.AUTH_FAILED)])
        # The fallback matches the profile, so 10.0.0.3 is only tried once
        self.assertEqual([a for a, _ in self.redfish.calls].count("10.0.0.3"), 1)

    def test_compliance_evaluated_for_results(self):
        run = self.run_scan()
        snapshot = run.results[0].compliance

        self.assertTrue(snapshot.idrac_outdated)
        self.assertEqual(snapshot.readiness, Readiness.MAINTENANCE_REQUIRED)

    def test_compliance_skipped_when_disabled(self):
        run = self.run_scan(options=options(check_firmware=False))
        self.assertIsNone(run.results[0].compliance)

    def test_failure_events_emitted(self):
        self.run_scan()

        reasons = sorted((e.address, e.reason, e.stage) for e in self.events)
        self.assertEqual(reasons, [
            ("10.0.0.2", "unreachable", FailureStage.PROBE),
            ("10.0.0.3", "auth_failed", FailureStage.PROBE),
        ])

    def test_no_applicable_credentials(self):
        policy = CredentialPolicy(profiles=[CredentialProfile(id="p1", name="scoped only", username="root", secret="x")])

        run = self.coordinator.run(AddressSpaceSpec.from_range("10.0.0.1", "10.0.0.1"), policy, options(),
                                   event_sink=self.events.append)

        self.assertEqual(run.skipped[0].reason, SkipReason.NO_CREDENTIALS)
        self.assertEqual(self.events[0].stage, FailureStage.CREDENTIAL_RESOLUTION)
        self.assertEqual(self.redfish.calls, [])

    def test_compliance_error_reported(self):
        self.redfish.facts = HostFacts(model="PowerEdge R740", bios_version="unknown")

        run = self.run_scan()

        self.assertEqual(len(run.results), 1)
        self.assertIsNone(run.results[0].compliance)
        self.assertIn(FailureStage.COMPLIANCE, [e.stage for e in self.events])

    def test_progress_reported(self):
        progress = []

        run = self.run_scan(progress_callback=progress.append)

        self.assertEqual(progress[0].state, RunState.SCANNING)
        self.assertEqual(progress[-1].state, RunState.DONE)
        self.assertEqual(progress[-1].completed, 3)
        self.assertEqual(progress[-1].total, 3)
        self.assertIn(RunState.AGGREGATING, [p.state for p in progress])
        self.assertEqual(run.progress.percent, 100.0)

    def test_failing_progress_callback_does_not_abort(self):
        def explode(progress):
            raise RuntimeError("ui gone")

        run = self.run_scan(progress_callback=explode)

        self.assertEqual(run.summary().total, 3)

    def test_cancellation_keeps_finished_hosts(self):
        cancel = threading.Event()

        def cancel_after_three(progress):
            if progress.completed >= 3:
                cancel.set()

        run = self.run_scan(
            spec=AddressSpaceSpec.from_range("10.0.1.1", "10.0.1.20"),
            options=options(concurrency=1),
            cancel_event=cancel,
            progress_callback=cancel_after_three,
        )

        self.assertTrue(run.cancelled)
        self.assertEqual(run.summary().total, 3)
        self.assertTrue(run.summary().cancelled)
        self.assertEqual([s.address for s in run.skipped], ["10.0.1.1", "10.0.1.2", "10.0.1.3"])

    def test_cancellation_does_not_wait_for_slow_host(self):
        redfish = ScriptedRedfishProbe({"10.0.2.1": "ok", "10.0.2.2": "ok", "10.0.2.3": 4.0, "10.0.2.4": 4.0})
        coordinator = DiscoveryCoordinator(prober=HostProber({Protocol.REDFISH: redfish}, timeout=3.0, grace=0.5))
        cancel = threading.Event()
        timers = []

        def cancel_while_third_runs(progress):
            if progress.dispatched >= 3 and not timers:
                timers.append(threading.Timer(0.3, cancel.set))
                timers[0].start()

        started = time.monotonic()
        run = coordinator.run(AddressSpaceSpec.from_range("10.0.2.1", "10.0.2.4"), policy_with_default(),
                              options(concurrency=1, protocols=[Protocol.REDFISH]),
                              cancel_event=cancel, progress_callback=cancel_while_third_runs)
        elapsed = time.monotonic() - started

        self.assertLess(elapsed, 2.0)
        self.assertTrue(run.cancelled)
        self.assertEqual([r.address for r in run.results], ["10.0.2.1", "10.0.2.2"])
        self.assertEqual(run.skipped, [])
        self.assertEqual(run.summary().total, 2)

    def test_unexpected_prober_error_becomes_unreachable(self):
        class BrokenProber:
            def discover(self, address, candidates, protocols=None, cancel_event=None):
                raise RuntimeError("boom")

        coordinator = DiscoveryCoordinator(prober=BrokenProber())

        with self.assertLogs("idrac_discovery.coordinator", level="ERROR"):
            run = coordinator.run(AddressSpaceSpec.from_range("10.0.0.1", "10.0.0.2"), policy_with_default(),
                                  options())

        self.assertEqual([s.reason for s in run.skipped], [SkipReason.UNREACHABLE, SkipReason.UNREACHABLE])

    def test_cache_reused_when_enabled(self):
        self.coordinator = DiscoveryCoordinator(prober=self.prober, cache=DiscoveryCache(ttl_seconds=60))

        self.run_scan(options=options(use_cache=True))
        run = self.run_scan(options=options(use_cache=True))

        healthy_calls = [address for address, _ in self.redfish.calls if address == "10.0.0.1"]
        unreachable_calls = [address for address, _ in self.redfish.calls if address == "10.0.0.2"]
        self.assertEqual(len(healthy_calls), 1)
        self.assertEqual(len(unreachable_calls), 2)
        self.assertEqual(run.summary().healthy, 1)

    def test_failed_rediscovery_drops_cached_result(self):
        cache = DiscoveryCache(ttl_seconds=60)
        self.coordinator = DiscoveryCoordinator(prober=self.prober, cache=cache)
        self.run_scan()
        self.assertIsNotNone(cache.get("10.0.0.1"))

        self.redfish.script["10.0.0.1"] = ErrorClass.TIMEOUT
        run = self.run_scan()

        self.assertEqual(run.summary().healthy, 0)
        self.assertIsNone(cache.get("10.0.0.1"))

    def test_empty_policy_raises(self):
        with self.assertRaises(CredentialConfigError):
            self.coordinator.run(AddressSpaceSpec.from_range("10.0.0.1", "10.0.0.3"), CredentialPolicy())

    def test_invalid_address_space_raises(self):
        with self.assertRaises(InvalidAddressSpaceError):
            self.coordinator.run(AddressSpaceSpec.from_range("10.0.0.9", "10.0.0.1"), policy_with_default())


class SessionReleaseTests(unittest.TestCase):
    @mock.patch.object(requests.Session, "request",
                       side_effect=requests.exceptions.ConnectionError("Connection refused"))
    def test_no_sessions_left_after_run(self, request):
        manager = SessionManager(verify_ssl=True)
        probes = build_probes([Protocol.REDFISH, Protocol.WSMAN], session_manager=manager)
        coordinator = DiscoveryCoordinator(prober=HostProber(probes, timeout=1.0, grace=0.5))

        run = coordinator.run(AddressSpaceSpec.from_range("10.0.3.1", "10.0.3.40"), policy_with_default(),
                              options(concurrency=8))

        self.assertEqual(run.unreachable_count, 40)
        self.assertTrue(request.called)
        self.assertEqual(manager.sessions, {})
        self.assertEqual(manager.locks, {})


class DiscoveryCacheTests(unittest.TestCase):
    def test_entries_expire(self):
        now = [100.0]
        cache = DiscoveryCache(ttl_seconds=10, clock=lambda: now[0])
        cache.put(HostDiscoveryResult(address="10.0.0.1"))

        self.assertIsNotNone(cache.get("10.0.0.1"))
        now[0] = 111.0
        self.assertIsNone(cache.get("10.0.0.1"))

    def test_purge_expired(self):
        now = [0.0]
        cache = DiscoveryCache(ttl_seconds=5, clock=lambda: now[0])
        cache.put(HostDiscoveryResult(address="10.0.0.1"))
        now[0] = 6.0
        cache.put(HostDiscoveryResult(address="10.0.0.2"))

        self.assertEqual(cache.purge_expired(), 1)
        self.assertEqual(len(cache), 1)


if __name__ == "__main__":
    unittest.main()
