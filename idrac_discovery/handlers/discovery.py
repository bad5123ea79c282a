"""Discovery scan handler"""

import threading
from typing import Dict, List, Optional

from .base import BaseHandler
from idrac_discovery.address_space import spec_from_expression, spec_from_list
from idrac_discovery.credentials import manual_candidate
from idrac_discovery.database import DsmError
from idrac_discovery.inventory import InventoryMerger, PostgrestInventoryStore
from idrac_discovery.models import (
    AddressSpaceSpec,
    DiscoveryOptions,
    DiscoveryProgress,
    DiscoveryRun,
    HostFailureEvent,
    Protocol,
    RunState,
    SkipReason,
)

# Push progress to the job row every N completed hosts
PROGRESS_EVERY = 5
# Seconds between job cancellation checks
CANCEL_CHECK_INTERVAL = 5.0


class DiscoveryHandler(BaseHandler):
    """Runs discovery_scan jobs: expand, resolve, probe, evaluate, merge"""

    def execute_discovery_scan(self, job: Dict) -> Optional[DiscoveryRun]:
        """Execute a discovery scan for an IP range, IP list or datacenter"""
        job_id = job['id']
        self.log(f"Starting discovery scan job {job_id}")
        self.update_job_status(job_id, 'running')

        cancel_event = threading.Event()
        done_event = threading.Event()
        try:
            target_scope = job.get('target_scope') or {}
            details = job.get('details') or {}

            spec = self.build_address_space(target_scope)
            policy = self.db.get_credential_policy(target_scope.get('datacenter_id'))
            policy.manual_fallback = self.manual_fallback(details, has_profiles=bool(policy.profiles))
            options = self.build_options(details)

            self.watch_cancellation(job_id, cancel_event, done_event, CANCEL_CHECK_INTERVAL)
            run = self.executor.coordinator.run(
                spec,
                policy,
                options,
                cancel_event=cancel_event,
                progress_callback=self._progress_reporter(job_id),
                event_sink=lambda event: self._record_failure(job_id, event),
            )
            done_event.set()

            merge_summary = InventoryMerger(PostgrestInventoryStore(self.db, job_id)).merge(run.results)
            summary = run.summary()
            final_details = {
                "summary": summary.model_dump(),
                "merge": merge_summary.model_dump(),
                "discovered_count": len(run.results),
                "auth_failures": summary.auth_failed,
                "auth_failure_ips": [s.address for s in run.skipped if s.reason == SkipReason.AUTH_FAILED],
                "scanned_ips": run.progress.total,
                "server_results": self.server_results(run),
            }

            # A cancel that landed after the last watcher check still wins
            if run.cancelled or self.check_cancelled(job_id):
                self.log(f"Discovery scan {job_id} cancelled: {len(run.results)} host(s) kept", "WARN")
                self.update_job_status(job_id, 'cancelled', details=final_details)
            else:
                self.log(f"Discovery complete: {summary.healthy} healthy, {summary.degraded} degraded, "
                         f"{summary.auth_failed} auth failed, {summary.unreachable} unreachable")
                self.update_job_status(job_id, 'completed', details=final_details)
            return run

        except Exception as e:
            self.log(f"Discovery scan failed: {e}", "ERROR")
            self.update_job_status(job_id, 'failed', error=str(e))
            return None
        finally:
            done_event.set()

    def build_address_space(self, target_scope: Dict) -> AddressSpaceSpec:
        """ip_list wins over ip_range; datacenter_id scans the datacenter's registered scopes"""
        ip_list = target_scope.get('ip_list') or []
        ip_range = (target_scope.get('ip_range') or '').strip()
        datacenter_id = target_scope.get('datacenter_id')

        if ip_list:
            self.log(f"Scanning {len(ip_list)} IPs from provided list...")
            return spec_from_list(ip_list)
        if ip_range:
            self.log(f"Scanning IP range {ip_range}")
            return spec_from_expression(ip_range)
        if datacenter_id:
            scopes = self.db.get_datacenter_scopes(datacenter_id)
            self.log(f"Scanning {len(scopes)} IP scope(s) of datacenter {datacenter_id}")
            return AddressSpaceSpec.from_scopes(scopes, datacenter_id)
        raise ValueError("No IPs to scan - provide ip_range, ip_list or datacenter_id")

    @staticmethod
    def manual_fallback(details: Dict, has_profiles: bool):
        """
        Credentials typed into the job form are always tried last; the
        IDRAC_USER/IDRAC_PASSWORD defaults only when no profiles exist.
        """
        credentials = details.get('credentials') or {}
        if credentials.get('username') and credentials.get('password'):
            return manual_candidate(credentials['username'], credentials['password'],
                                    port=credentials.get('port') or 443)
        if not has_profiles:
            return manual_candidate()
        return None

    def build_options(self, details: Dict) -> DiscoveryOptions:
        overrides = {}
        if details.get('max_threads'):
            overrides['concurrency'] = int(details['max_threads'])
        if details.get('probe_timeout'):
            overrides['probe_timeout'] = float(details['probe_timeout'])
        if details.get('protocols'):
            overrides['protocols'] = [Protocol(p.upper()) for p in details['protocols']]
        overrides['use_cache'] = bool(details.get('use_cache', False))
        overrides['check_firmware'] = bool(details.get('check_firmware', True))

        if overrides['check_firmware']:
            try:
                overrides['baselines'] = self.db.get_firmware_baselines()
            except DsmError as e:
                self.log(f"Firmware baselines unavailable, compliance will report not_supported: {e}", "WARN")
        return DiscoveryOptions.from_config(**overrides)

    def _progress_reporter(self, job_id: str):
        def report(progress: DiscoveryProgress):
            if progress.state == RunState.SCANNING and progress.completed % PROGRESS_EVERY != 0:
                return
            self.report_progress(job_id, {
                "current_stage": progress.state.value,
                "ips_processed": progress.completed,
                "ips_dispatched": progress.dispatched,
                "ips_total": progress.total,
                "percent": progress.percent,
            })
        return report

    def _record_failure(self, job_id: str, event: HostFailureEvent):
        self.log(f"{event.address}: {event.stage.value} failure ({event.reason})", "DEBUG")
        self.db.record_operational_event(event, job_id=job_id)

    @staticmethod
    def server_results(run: DiscoveryRun) -> List[Dict]:
        results = []
        for result in run.results:
            results.append({
                'ip': result.address,
                'status': 'synced' if result.healthiest_protocol else 'degraded',
                'model': result.model,
                'service_tag': result.service_tag,
                'healthiest_protocol': result.healthiest_protocol.protocol.value if result.healthiest_protocol else None,
                'readiness': result.compliance.readiness.value if result.compliance else None,
            })
        for skipped in run.skipped:
            results.append({'ip': skipped.address, 'status': skipped.reason.value, 'detail': skipped.detail})
        return results
