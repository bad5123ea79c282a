"""
Discovery job executor.

Polls the DSM jobs table for pending discovery_scan jobs and runs them one
at a time through DiscoveryHandler.
"""

import argparse
import logging
import time
from typing import Dict, Optional

from idrac_discovery.cache import DiscoveryCache
from idrac_discovery.config import (
    DISCOVERY_MAX_WORKERS,
    DSM_URL,
    LOG_LEVEL,
    POLL_INTERVAL,
    PROBE_TIMEOUT_SECONDS,
    SERVICE_ROLE_KEY,
    VERIFY_SSL,
)
from idrac_discovery.coordinator import DiscoveryCoordinator
from idrac_discovery.database import DISCOVERY_JOB_TYPE, DsmClient
from idrac_discovery.handlers import DiscoveryHandler
from idrac_discovery.session_manager import get_session_manager
from idrac_discovery.utils import configure_logging

logger = logging.getLogger("idrac_discovery.executor")

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


class DiscoveryExecutor:
    """Polls for discovery jobs and dispatches them to the handler"""

    def __init__(self, db: Optional[DsmClient] = None, coordinator: Optional[DiscoveryCoordinator] = None):
        self.db = db or DsmClient()
        self.coordinator = coordinator or DiscoveryCoordinator(cache=DiscoveryCache())
        self.discovery_handler = DiscoveryHandler(self)
        self.running = True
        self.jobs_processed = 0

    def log(self, message: str, level: str = "INFO"):
        logger.log(_LEVELS.get(level.upper(), logging.INFO), message)

    def _validate_service_role_key(self):
        """Ensure SERVICE_ROLE_KEY is present before making Supabase requests"""
        if not SERVICE_ROLE_KEY or not SERVICE_ROLE_KEY.strip():
            self.log("ERROR: SERVICE_ROLE_KEY not set!", "ERROR")
            self.log("Set via: export SERVICE_ROLE_KEY='your-key-here'", "ERROR")
            raise SystemExit(1)

    def execute_job(self, job: Dict):
        """Execute a job based on its type"""
        job_type = job.get('job_type')
        if job_type != DISCOVERY_JOB_TYPE:
            self.log(f"Unsupported job type {job_type} for job {job['id']}", "WARN")
            self.db.update_job_status(job['id'], 'failed', error=f"Unsupported job type: {job_type}")
            return
        self.discovery_handler.execute_discovery_scan(job)
        self.jobs_processed += 1

    def poll_once(self) -> bool:
        """Run the oldest ready job, if any; returns True if a job ran"""
        jobs = self.db.get_pending_jobs()
        if not jobs:
            return False
        job = jobs[0]
        self.log(f"Executing job {job['id']} ({job.get('job_type')})")
        self.execute_job(job)
        return True

    def run(self):
        """Main execution loop"""
        self.log("=" * 70)
        self.log("iDRAC Discovery - Job Executor")
        self.log("=" * 70)
        self.log(f"DSM_URL: {DSM_URL}")
        self.log(f"Polling interval: {POLL_INTERVAL} seconds")
        self.log(f"Discovery workers: {DISCOVERY_MAX_WORKERS}, probe timeout: {PROBE_TIMEOUT_SECONDS}s")
        self.log(f"SSL Verification: {VERIFY_SSL}")
        self.log("=" * 70)

        self._validate_service_role_key()
        self.log("[OK] Configuration validated")

        try:
            while self.running:
                try:
                    self.poll_once()
                    if self.coordinator.cache is not None:
                        self.coordinator.cache.purge_expired()
                    time.sleep(POLL_INTERVAL)
                except KeyboardInterrupt:
                    raise
                except Exception as e:
                    self.log(f"Error in main loop: {e}", "ERROR")
                    time.sleep(POLL_INTERVAL)
        except KeyboardInterrupt:
            self.log("Shutting down discovery executor...")
            self.running = False
            get_session_manager().close_all_sessions()


def main(argv=None):
    parser = argparse.ArgumentParser(description="Poll DSM for discovery_scan jobs and run them")
    parser.add_argument("--once", action="store_true", help="run at most one pending job and exit")
    parser.add_argument("--log-level", default=LOG_LEVEL, help="logging level (default: %(default)s)")
    args = parser.parse_args(argv)

    configure_logging(args.log_level)
    executor = DiscoveryExecutor()
    if args.once:
        executor._validate_service_role_key()
        executor.poll_once()
        return
    executor.run()


if __name__ == "__main__":
    main()
