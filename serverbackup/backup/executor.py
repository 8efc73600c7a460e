"""
Backup executor - runs one backup of one server.

Workflow:
1. Resolve the local backup root (server path, global path, fallback)
2. Acquire the server's run lock and mark the run as running
3. Create the remote working directory
4. Archive the selected directories with tar (pigz when available)
5. Dump databases (failures here are logged and skipped)
6. Pull the artifacts with rsync, falling back to SFTP
7. Remove the remote working directory
8. Mark the run as success, or failed with the error logged
"""

import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

from flask import current_app

from serverbackup import db
from serverbackup.models import AppSettings, BackupLog
from serverbackup.utils.crypto import get_secret_box
from .channel import ChannelError, RemoteChannel, run_local
from .commands import (
    BUILTIN_PATH_SETS,
    DUMP_CLIENT_PROBE,
    PIGZ_PROBE,
    UnsafeArgument,
    custom_archive_suffix,
    mkdir_command,
    mysqldump_command,
    remote_workdir,
    remove_command,
    tar_command,
    workdir_name,
)
from .locks import acquire_run_lock, release_run_lock
from .target import TargetSpec
from .transfer import TransferStrategy


logger = logging.getLogger(__name__)


class DatabaseDumpFailed(Exception):
    """Raised inside the database step; logged and not fatal to the run."""
    pass


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def append_log(log_id: int, message: str):
    """
    Append one line to a run's log.

    Best-effort: a failed write is reported to the application log and
    never raised.
    """
    logger.info(f"[Backup {log_id}] {message}")
    try:
        record = db.session.get(BackupLog, log_id)
        if record is None:
            return
        record.logs = (record.logs or '') + f"{_timestamp()}: {message}\n"
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.warning(f"Failed to append to log of run {log_id}: {e}")


def mark_failed(log_id: int, message: str):
    """Record a failure for a run that never reached its executor."""
    record = db.session.get(BackupLog, log_id)
    if record is None or record.is_terminal:
        return

    append_log(log_id, f"Backup failed: {message}")
    record = db.session.get(BackupLog, log_id)
    record.status = 'failed'
    record.finished_at = datetime.utcnow()
    db.session.commit()


class BackupExecutor:
    """
    Orchestrates the complete backup workflow for one server.
    """

    def __init__(self, target: TargetSpec, log_id: int,
                 channel: Optional[RemoteChannel] = None,
                 transfer: Optional[TransferStrategy] = None,
                 default_backup_path: Optional[str] = None,
                 fallback_backup_dir: str = '~/Server-Backups',
                 remote_tmp_root: str = '/tmp',
                 connect_timeout: int = 30,
                 lock_stale_after: timedelta = timedelta(hours=24),
                 today=None):
        """
        Initialize backup executor.

        Args:
            target: Server to back up
            log_id: BackupLog row this run reports into (created as pending)
            channel: Remote channel; a RemoteChannel is created when omitted
            transfer: Transfer strategy; rsync with SFTP fallback when omitted
            default_backup_path: Global local backup root from settings
            fallback_backup_dir: Local root used when no other is set or writable
            remote_tmp_root: Parent of the remote working directory
            connect_timeout: SSH connect timeout in seconds
            lock_stale_after: Age after which a held run lock is reclaimed
            today: Date used in directory names (UTC today by default)
        """
        self.target = target
        self.log_id = log_id
        self.default_backup_path = default_backup_path
        self.fallback_backup_dir = fallback_backup_dir
        self.remote_tmp_root = remote_tmp_root
        self.lock_stale_after = lock_stale_after

        self.channel = channel or RemoteChannel(target, on_output=self._log, connect_timeout=connect_timeout)
        self.transfer = transfer or TransferStrategy(target, self.channel, self._log, run_local=run_local)

        day = today or datetime.now(timezone.utc).date()
        self.safe_name = target.safe_name
        self.dir_name = workdir_name(self.safe_name, day)
        self.remote_dir = remote_workdir(remote_tmp_root, self.safe_name, day)
        self.prefix = f"{self.safe_name}_"

        self.local_root = None
        self._use_pigz = None

    def run(self):
        """
        Execute the backup.

        Raises:
            Exception: The error that failed the run, after it has been
                logged and the run marked failed
        """
        locked = False

        try:
            self.local_root = self._resolve_local_root()
            local_dir = os.path.join(self.local_root, self.dir_name)

            if self.target.server_id is not None:
                acquire_run_lock(self.target.server_id, self.log_id, self.lock_stale_after)
                locked = True

            self._set_status('running', started_at=datetime.utcnow())
            self._log("Starting backup process...")

            self._create_remote_dir()
            self._archive_directories()
            self._dump_databases()
            self._pull_artifacts(local_dir)
            self._cleanup_remote()

            self._log("Backup completed successfully.")
            self._set_status('success', finished_at=datetime.utcnow())

        except Exception as e:
            self._log(f"Backup failed: {e}")
            try:
                self._set_status('failed', finished_at=datetime.utcnow())
            except Exception as status_error:
                db.session.rollback()
                logger.error(f"Could not mark run {self.log_id} as failed: {status_error}")
            raise

        finally:
            if locked:
                try:
                    release_run_lock(self.target.server_id, self.log_id)
                except Exception as e:
                    db.session.rollback()
                    logger.error(f"Failed to release run lock for server {self.target.server_id}: {e}")
            self.channel.close()

    def _resolve_local_root(self) -> str:
        if self.target.local_backup_path:
            candidate = self.target.local_backup_path
            self._log(f"Using server-specific local backup path: {candidate}")
        else:
            candidate = self.default_backup_path or self.fallback_backup_dir
            self._log(f"Using default/global local backup path: {candidate}")

        resolved = os.path.expanduser(candidate)
        try:
            self._ensure_writable(resolved)
            return resolved
        except OSError:
            fallback = os.path.expanduser(self.fallback_backup_dir)
            self._log(f"Local backup path {resolved} not writable, using fallback: {fallback}")
            self._ensure_writable(fallback)
            return fallback

    @staticmethod
    def _ensure_writable(path: str):
        os.makedirs(path, exist_ok=True)
        if not os.access(path, os.W_OK):
            raise PermissionError(f"Directory not writable: {path}")

    def _create_remote_dir(self):
        self._log(f"Creating remote directory: {self.remote_dir}")
        self.channel.run(mkdir_command(self.remote_dir))

    def _archive_directories(self):
        for flag, path, suffix in BUILTIN_PATH_SETS:
            if getattr(self.target, flag):
                # Archiving /var/log must not drop the *.log files
                self._archive(path, suffix, exclude_logs=(flag != 'backup_logs'))
            else:
                self._log(f"Skipping {path} backup")

        for path in self.target.backup_paths:
            self._archive(path, custom_archive_suffix(path))

    def _archive(self, source_path: str, suffix: str, exclude_logs: bool = True):
        self._log(f"Compressing {source_path}...")
        archive_path = f"{self.remote_dir}/{self.prefix}{suffix}.tar.gz"
        self.channel.run(tar_command(archive_path, source_path, self._pigz_available(), exclude_logs))

    def _pigz_available(self) -> bool:
        """Probe for pigz once per run."""
        if self._use_pigz is None:
            probe = self.channel.run(PIGZ_PROBE, check=False)
            self._use_pigz = probe.exit_status == 0 and bool(probe.stdout.strip())
            self._log("Using pigz for compression" if self._use_pigz else "pigz not found, using gzip")
        return self._use_pigz

    def _dump_databases(self):
        if not self.target.backup_db:
            self._log("Skipping database backup")
            return

        if not self.target.db_user:
            self._log("Skipping database backup: missing dbUser")
            return

        try:
            self._run_dumps()
        except DatabaseDumpFailed as e:
            self._log(f"Database dump failed, continuing: {e}")

    def _run_dumps(self):
        """
        Raises:
            DatabaseDumpFailed: If no dump client exists or a dump fails
        """
        try:
            client = self._locate_dump_client()
            connection = {
                'db_user': self.target.db_user,
                'db_password': self.target.db_password,
                'db_host': self.target.db_host,
                'db_port': self.target.db_port,
            }

            if self.target.db_selected:
                self._log(f"Dumping selected databases: {', '.join(self.target.db_selected)}")
                for name in self.target.db_selected:
                    self._log(f"Dumping database: {name}")
                    result_file = f"{self.remote_dir}/{self.prefix}db-{name}.sql"
                    self.channel.run(mysqldump_command(client, result_file, database=name, **connection))
            else:
                self._log("Dumping all databases...")
                result_file = f"{self.remote_dir}/{self.prefix}db-dump-all.sql"
                self.channel.run(mysqldump_command(client, result_file, **connection))

        except (ChannelError, UnsafeArgument) as e:
            raise DatabaseDumpFailed(str(e)) from e

    def _locate_dump_client(self) -> str:
        probe = self.channel.run(DUMP_CLIENT_PROBE, check=False)
        lines = probe.stdout.strip().splitlines()
        if probe.exit_status != 0 or not lines:
            raise DatabaseDumpFailed("mysqldump or mariadb-dump not found on remote host")
        return lines[0].strip()

    def _pull_artifacts(self, local_dir: str):
        self._log(f"Rsyncing to local: {local_dir}")
        os.makedirs(local_dir, exist_ok=True)
        self.transfer.transfer(self.remote_dir, local_dir)

    def _cleanup_remote(self):
        self._log("Cleaning up remote files...")
        self.channel.run(remove_command(self.remote_dir, self.remote_tmp_root))

    def _set_status(self, status: str, **fields):
        record = db.session.get(BackupLog, self.log_id)
        if record is None:
            raise LookupError(f"Backup log not found: {self.log_id}")
        record.status = status
        for name, value in fields.items():
            setattr(record, name, value)
        db.session.commit()

    def _log(self, message: str):
        append_log(self.log_id, message)


def execute_backup(log_id: int):
    """
    Execute the backup recorded by a pending BackupLog.

    Must be called within an application context.

    Args:
        log_id: ID of the pending BackupLog

    Raises:
        LookupError: If the log or its server no longer exists
        Exception: Whatever failed the run (already logged to the run)
    """
    record = db.session.get(BackupLog, log_id)
    if record is None:
        raise LookupError(f"Backup log not found: {log_id}")

    server = record.server
    if server is None:
        mark_failed(log_id, "Server not found")
        raise LookupError(f"Server not found for backup log {log_id}")

    config = current_app.config
    try:
        target = TargetSpec.from_server(server, get_secret_box(current_app))
        settings = AppSettings.current()
    except Exception as e:
        mark_failed(log_id, str(e))
        raise

    executor = BackupExecutor(
        target,
        log_id,
        default_backup_path=(settings.global_local_backup_path or '').strip() or None,
        fallback_backup_dir=config.get('FALLBACK_BACKUP_DIR', '~/Server-Backups'),
        remote_tmp_root=config.get('REMOTE_TMP_ROOT', '/tmp'),
        connect_timeout=config.get('SSH_CONNECT_TIMEOUT', 30),
        lock_stale_after=timedelta(hours=config.get('RUN_LOCK_STALE_HOURS', 24)),
    )
    executor.run()
