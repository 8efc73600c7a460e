"""
Detached execution of backup runs.

Callers get the id of a pending BackupLog straight away; the run itself
executes on its own thread with its own application context.
"""

import logging
import threading
from concurrent.futures import Future
from typing import Optional

from serverbackup import db
from serverbackup.models import BackupLog
from .executor import execute_backup


logger = logging.getLogger(__name__)


class RunLauncher:
    """
    Starts one thread per backup run.

    There is no worker cap: a run stuck on a dead host never delays
    another run's start.
    """

    def __init__(self, app, runner=execute_backup):
        """
        Args:
            app: Flask app; each run pushes its own app context
            runner: Callable taking a BackupLog id
        """
        self.app = app
        self.runner = runner
        self._threads = set()
        self._lock = threading.Lock()

    def create_run(self, server_id: int) -> int:
        """Create a pending BackupLog for server_id and return its id."""
        record = BackupLog(server_id=server_id, status='pending', logs='')
        db.session.add(record)
        db.session.commit()
        return record.id

    def launch(self, server_id: int) -> int:
        """
        Create a run for server_id and start it without waiting.

        Returns:
            BackupLog id
        """
        log_id = self.create_run(server_id)
        self.submit(log_id)
        return log_id

    def submit(self, log_id: int) -> Future:
        """
        Start an existing pending run without waiting.

        Returns:
            Future resolved (with None) once the run's thread is done
        """
        future = Future()
        thread = threading.Thread(
            target=self._run_detached,
            args=(log_id, future),
            name=f'backup-run-{log_id}',
            daemon=True
        )
        with self._lock:
            self._threads.add(thread)
        thread.start()
        return future

    def _run_detached(self, log_id: int, future: Future):
        future.set_running_or_notify_cancel()
        try:
            with self.app.app_context():
                try:
                    self.runner(log_id)
                    logger.info(f"Backup run {log_id} finished")
                except Exception as e:
                    # Failure is already recorded on the run
                    logger.error(f"Backup run {log_id} failed: {e}")
        finally:
            with self._lock:
                self._threads.discard(threading.current_thread())
            future.set_result(None)

    def active_count(self) -> int:
        with self._lock:
            return len(self._threads)

    def shutdown(self, wait: bool = False, timeout: Optional[float] = None):
        """Optionally wait for live runs; threads are daemons and never block exit."""
        if not wait:
            return
        with self._lock:
            threads = list(self._threads)
        for thread in threads:
            thread.join(timeout)
