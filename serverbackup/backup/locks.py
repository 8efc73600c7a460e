"""
Per-server run exclusion.

A row in server_run_locks marks a server as busy. Insertion relies on the
primary key being unique, so two workers racing for the same server cannot
both succeed.
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError

from serverbackup import db
from serverbackup.models import BackupLog, ServerRunLock


logger = logging.getLogger(__name__)


class TargetBusy(Exception):
    """Raised when another run already holds the server's lock."""

    def __init__(self, server_id: int, holder_log_id: int):
        self.server_id = server_id
        self.holder_log_id = holder_log_id
        super().__init__(f"Another backup (run {holder_log_id}) is already in progress for this server")


def _try_insert(server_id: int, log_id: int) -> bool:
    # Core insert so a clash surfaces as IntegrityError, not an identity-map conflict
    try:
        db.session.execute(ServerRunLock.__table__.insert().values(
            server_id=server_id, backup_log_id=log_id, acquired_at=datetime.utcnow()
        ))
        db.session.commit()
        return True
    except IntegrityError:
        db.session.rollback()
        return False


def _is_stale(lock: ServerRunLock, stale_after: timedelta) -> bool:
    holder = db.session.get(BackupLog, lock.backup_log_id)
    if holder is None or holder.is_terminal:
        return True
    return lock.acquired_at < datetime.utcnow() - stale_after


def acquire_run_lock(server_id: int, log_id: int, stale_after: timedelta = timedelta(hours=24)):
    """
    Mark server_id as being backed up by run log_id.

    A lock left behind by a finished, deleted or long-running holder is
    reclaimed.

    Raises:
        TargetBusy: If a live run holds the lock
    """
    if _try_insert(server_id, log_id):
        return

    lock = db.session.get(ServerRunLock, server_id)
    if lock is None:
        # Released between our insert and the lookup
        if _try_insert(server_id, log_id):
            return
        lock = db.session.get(ServerRunLock, server_id)
        if lock is None:
            raise TargetBusy(server_id, 0)

    if lock.backup_log_id == log_id:
        return

    if not _is_stale(lock, stale_after):
        raise TargetBusy(server_id, lock.backup_log_id)

    logger.warning(f"Reclaiming stale run lock for server {server_id} held by run {lock.backup_log_id}")
    # Conditional delete so only one reclaimer wins
    deleted = ServerRunLock.query.filter_by(
        server_id=server_id, backup_log_id=lock.backup_log_id
    ).delete(synchronize_session=False)
    db.session.commit()
    db.session.expire_all()

    if deleted and _try_insert(server_id, log_id):
        return

    current = db.session.get(ServerRunLock, server_id)
    raise TargetBusy(server_id, current.backup_log_id if current else 0)


def release_run_lock(server_id: int, log_id: int):
    """Drop the lock if run log_id still holds it."""
    ServerRunLock.query.filter_by(server_id=server_id, backup_log_id=log_id).delete(synchronize_session=False)
    db.session.commit()
