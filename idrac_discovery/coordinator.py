"""
Discovery run coordination.

A producer thread walks the expanded address space into a bounded queue;
a fixed pool of worker threads takes addresses off the queue, resolves
credentials, probes the host and evaluates compliance. Finished hosts go
into a lock-protected sink, which is the only mutable state shared between
workers. Memory use is proportional to the pool size, not to the address
space.
"""

import ipaddress
import logging
import queue
import threading
from typing import Callable, List, Optional, Union

from idrac_discovery import compliance
from idrac_discovery.address_space import expand
from idrac_discovery.cache import DiscoveryCache
from idrac_discovery.config import DISCOVERY_QUEUE_FACTOR, MAX_ADDRESSES_PER_RUN, PROBE_GRACE_SECONDS
from idrac_discovery.credentials import CredentialResolver
from idrac_discovery.errors import ComplianceError
from idrac_discovery.host_prober import HostProber
from idrac_discovery.models import (
    AddressSpaceSpec,
    CredentialPolicy,
    DiscoveryOptions,
    DiscoveryProgress,
    DiscoveryRun,
    FailureStage,
    HostDiscoveryResult,
    HostFailureEvent,
    RunState,
    SkippedHost,
    SkipReason,
)
from idrac_discovery.protocols import build_probes
from idrac_discovery.utils import utc_now

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[DiscoveryProgress], None]
EventSink = Callable[[HostFailureEvent], None]
Outcome = Union[HostDiscoveryResult, SkippedHost]

# Queue put/get slice between cancellation checks
POLL_SECONDS = 0.25

_STOP = object()


class _ResultSink:
    """Collects per-host outcomes; closing it freezes the snapshot."""

    def __init__(self, total: int):
        self._lock = threading.Lock()
        self._results: List[HostDiscoveryResult] = []
        self._skipped: List[SkippedHost] = []
        self.dispatched = 0
        self.total = total
        self.closed = False

    def mark_dispatched(self) -> DiscoveryProgress:
        with self._lock:
            self.dispatched += 1
            return self._progress()

    def add(self, outcome: Outcome) -> Optional[DiscoveryProgress]:
        """Record an outcome; returns the new progress, or None once closed."""
        with self._lock:
            if self.closed:
                return None
            if isinstance(outcome, HostDiscoveryResult):
                self._results.append(outcome)
            else:
                self._skipped.append(outcome)
            return self._progress()

    def close(self):
        with self._lock:
            self.closed = True
            return list(self._results), list(self._skipped)

    def _progress(self) -> DiscoveryProgress:
        return DiscoveryProgress(
            state=RunState.SCANNING,
            dispatched=self.dispatched,
            completed=len(self._results) + len(self._skipped),
            total=self.total,
        )


def _address_key(outcome: Outcome) -> int:
    return int(ipaddress.ip_address(outcome.address))


class DiscoveryCoordinator:
    def __init__(
        self,
        prober: Optional[HostProber] = None,
        cache: Optional[DiscoveryCache] = None,
        queue_factor: int = DISCOVERY_QUEUE_FACTOR,
        max_addresses: int = MAX_ADDRESSES_PER_RUN,
    ):
        self.prober = prober
        self.cache = cache
        self.queue_factor = max(1, queue_factor)
        self.max_addresses = max_addresses

    def run(
        self,
        spec: AddressSpaceSpec,
        credential_policy: CredentialPolicy,
        options: Optional[DiscoveryOptions] = None,
        cancel_event: Optional[threading.Event] = None,
        progress_callback: Optional[ProgressCallback] = None,
        event_sink: Optional[EventSink] = None,
    ) -> DiscoveryRun:
        """
        Discover every address in spec.

        Raises:
            CredentialConfigError: the policy has no profiles and no fallback
            InvalidAddressSpaceError: spec cannot be expanded

        Every other failure is recorded per host; the returned run always
        carries a summary. On cancellation the run holds exactly the hosts
        that finished before the cancel was observed.
        """
        options = options or DiscoveryOptions.from_config()
        cancel_event = cancel_event or threading.Event()
        run = DiscoveryRun(requested=spec)

        resolver = CredentialResolver.from_policy(credential_policy)
        space = expand(spec, self.max_addresses)
        prober = self.prober or HostProber(
            build_probes(options.protocols),
            timeout=options.probe_timeout,
            grace=PROBE_GRACE_SECONDS,
        )

        total = len(space)
        run.progress = DiscoveryProgress(state=RunState.SCANNING, total=total)
        run.state = RunState.SCANNING
        self._emit(progress_callback, run.progress)
        logger.info(f"Discovery started: {total} address(es), {options.concurrency} worker(s), "
                    f"protocols {', '.join(p.value for p in options.protocols)}")

        sink = _ResultSink(total)
        work: queue.Queue = queue.Queue(maxsize=max(1, options.concurrency) * self.queue_factor)
        worker_count = max(1, min(options.concurrency, total))

        def produce():
            for address in space:
                if not self._put(work, address, cancel_event):
                    return
            for _ in range(worker_count):
                if not self._put(work, _STOP, cancel_event):
                    return

        def consume():
            while not cancel_event.is_set():
                try:
                    address = work.get(timeout=POLL_SECONDS)
                except queue.Empty:
                    continue
                if address is _STOP:
                    return
                self._emit(progress_callback, sink.mark_dispatched())
                outcome = self._discover_host(address, resolver, prober, options, cancel_event, event_sink)
                if cancel_event.is_set():
                    return
                progress = sink.add(outcome)
                if progress is not None:
                    self._emit(progress_callback, progress)

        producer = threading.Thread(target=produce, name="discovery-producer", daemon=True)
        workers = [threading.Thread(target=consume, name=f"discovery-worker-{i}", daemon=True)
                   for i in range(worker_count)]
        producer.start()
        for worker in workers:
            worker.start()

        while any(w.is_alive() for w in workers):
            if cancel_event.wait(POLL_SECONDS):
                break

        run.cancelled = cancel_event.is_set()
        results, skipped = sink.close()
        if run.cancelled:
            logger.warning(f"Discovery cancelled after {len(results) + len(skipped)} of {total} host(s)")

        run.state = RunState.AGGREGATING
        self._emit(progress_callback, DiscoveryProgress(
            state=RunState.AGGREGATING, dispatched=sink.dispatched,
            completed=len(results) + len(skipped), total=total,
        ))
        run.results = sorted(results, key=_address_key)
        run.skipped = sorted(skipped, key=_address_key)
        run.unreachable_count = sum(1 for s in skipped if s.reason == SkipReason.UNREACHABLE)
        run.progress = DiscoveryProgress(
            state=RunState.DONE, dispatched=sink.dispatched,
            completed=len(results) + len(skipped), total=total,
        )
        run.state = RunState.DONE
        run.completed_at = utc_now()
        self._emit(progress_callback, run.progress)

        summary = run.summary()
        logger.info(
            f"Discovery finished: {summary.total} host(s), {summary.healthy} healthy, "
            f"{summary.degraded} degraded, {summary.unreachable} unreachable, "
            f"{summary.auth_failed} auth failed, {summary.no_credentials} without credentials"
            + (" (cancelled)" if summary.cancelled else "")
        )
        return run

    @staticmethod
    def _put(work: queue.Queue, item, cancel_event: threading.Event) -> bool:
        """Blocking put that gives up once the run is cancelled."""
        while not cancel_event.is_set():
            try:
                work.put(item, timeout=POLL_SECONDS)
                return True
            except queue.Full:
                continue
        return False

    def _discover_host(
        self,
        address: str,
        resolver: CredentialResolver,
        prober: HostProber,
        options: DiscoveryOptions,
        cancel_event: threading.Event,
        event_sink: Optional[EventSink],
    ) -> Outcome:
        try:
            outcome = None
            if self.cache is not None and options.use_cache:
                outcome = self.cache.get(address)
                if outcome is not None:
                    logger.debug(f"{address}: using cached discovery result")

            if outcome is None:
                outcome = prober.discover(address, resolver.resolve(address), options.protocols, cancel_event)
                if self.cache is not None:
                    if isinstance(outcome, HostDiscoveryResult):
                        self.cache.put(outcome)
                    elif not cancel_event.is_set():
                        self.cache.invalidate(address)

            if isinstance(outcome, HostDiscoveryResult) and options.check_firmware:
                try:
                    outcome.compliance = compliance.evaluate_result(outcome, options.baselines)
                except ComplianceError as e:
                    logger.warning(f"{address}: compliance evaluation failed: {e}")
                    self._report(event_sink, HostFailureEvent(
                        address=address, stage=FailureStage.COMPLIANCE, reason="compliance_error", detail=str(e),
                    ))
        except Exception as e:
            logger.exception(f"{address}: unexpected error during discovery")
            outcome = SkippedHost(address=address, reason=SkipReason.UNREACHABLE, detail=f"Unexpected error: {e}")

        if isinstance(outcome, SkippedHost) and not cancel_event.is_set():
            self._report(event_sink, HostFailureEvent(
                address=address, stage=outcome.stage, reason=outcome.reason.value, detail=outcome.detail,
            ))
        return outcome

    @staticmethod
    def _emit(progress_callback: Optional[ProgressCallback], progress: DiscoveryProgress) -> None:
        if progress_callback is None:
            return
        try:
            progress_callback(progress)
        except Exception:
            logger.exception("Discovery progress callback failed")

    @staticmethod
    def _report(event_sink: Optional[EventSink], event: HostFailureEvent) -> None:
        if event_sink is None:
            return
        try:
            event_sink(event)
        except Exception:
            logger.exception(f"Failed to record failure event for {event.address}")
