"""Base handler class for job execution"""

import threading
from typing import Dict, Optional


class BaseHandler:
    """Base class for job handlers with shared utilities"""

    def __init__(self, executor):
        """
        Initialize handler with reference to main executor

        Args:
            executor: DiscoveryExecutor providing the DSM client and logging
        """
        self.executor = executor

    @property
    def db(self):
        return self.executor.db

    def log(self, message: str, level: str = "INFO"):
        """
        Log message through the executor

        Args:
            message: Log message
            level: Log level (INFO, WARN, ERROR, DEBUG)
        """
        self.executor.log(message, level)

    def update_job_status(self, job_id: str, status: Optional[str], details: Optional[Dict] = None,
                          error: Optional[str] = None) -> bool:
        """
        Update job status in database

        Args:
            job_id: Job UUID
            status: New status (pending, running, completed, failed, cancelled)
            details: Details merged into the job's existing details
            error: Error message for failed jobs

        Returns:
            True if update successful, False otherwise
        """
        return self.db.update_job_status(job_id, status, details=details, error=error)

    def report_progress(self, job_id: str, details: Dict) -> bool:
        """Merge progress into the job's details without touching its status"""
        return self.db.update_job_status(job_id, None, details=details)

    def check_cancelled(self, job_id: str) -> bool:
        """True if the user cancelled the job"""
        return self.db.is_job_cancelled(job_id)

    def watch_cancellation(self, job_id: str, cancel_event: threading.Event,
                           done_event: threading.Event, interval: float) -> threading.Thread:
        """
        Start a daemon thread that sets cancel_event once the job is cancelled.

        The thread exits when done_event is set.
        """
        def watch():
            while not done_event.wait(interval):
                if self.check_cancelled(job_id):
                    self.log(f"Job {job_id} cancelled by user, stopping discovery", "WARN")
                    cancel_event.set()
                    return

        thread = threading.Thread(target=watch, name=f"cancel-watch-{job_id}", daemon=True)
        thread.start()
        return thread
