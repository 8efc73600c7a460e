"""
Unit tests for database models (serverbackup/models.py).

Tests all SQLAlchemy models, relationships, and helpers.
"""

from datetime import datetime

import pytest

from serverbackup.models import User, AppSettings, Server, BackupLog, CronJob, ServerRunLock


class TestUserModel:
    """Test User model."""

    def test_create_user(self, db):
        """Test creating a user."""
        user = User(username='testuser', password_hash='hashed_password_123')
        db.session.add(user)
        db.session.commit()

        assert user.id is not None
        assert user.created_at is not None

    def test_user_username_unique(self, db):
        """Test that username must be unique."""
        db.session.add(User(username='testuser', password_hash='hash1'))
        db.session.commit()

        db.session.add(User(username='testuser', password_hash='hash2'))

        with pytest.raises(Exception):  # IntegrityError
            db.session.commit()

    def test_user_repr(self, db):
        user = User(username='testuser', password_hash='hash')
        assert repr(user) == '<User testuser>'


class TestAppSettingsModel:
    """Test the single-row settings model."""

    def test_current_creates_row_once(self, db):
        AppSettings.query.delete()
        db.session.commit()

        first = AppSettings.current()
        second = AppSettings.current()

        assert first.id == second.id
        assert AppSettings.query.count() == 1
        assert first.global_local_backup_path is None

    def test_current_returns_seeded_row(self, db):
        # Seeded when the app created its schema
        assert AppSettings.query.count() == 1
        assert AppSettings.current() is AppSettings.query.first()


class TestServerModel:
    """Test Server model."""

    def test_defaults(self, db):
        server = Server(name='Web', host='example.com', username='root')
        db.session.add(server)
        db.session.commit()

        assert server.port == 22
        assert server.backup_www is True
        assert server.backup_logs is True
        assert server.backup_nginx is True
        assert server.backup_db is True
        assert server.db_host == 'localhost'
        assert server.db_port == 3306
        assert server.backup_path_list == []
        assert server.db_selected_list == []

    def test_json_list_properties(self, db):
        server = Server(name='Web', host='example.com', username='root')
        server.backup_path_list = ['/srv/app', '/etc/ssl']
        server.db_selected_list = ['shop', 'blog']
        db.session.add(server)
        db.session.commit()

        loaded = db.session.get(Server, server.id)
        assert loaded.backup_path_list == ['/srv/app', '/etc/ssl']
        assert loaded.db_selected_list == ['shop', 'blog']

    def test_empty_lists_are_stored_as_null(self, db):
        server = Server(name='Web', host='example.com', username='root')
        server.backup_path_list = []
        server.db_selected_list = []

        assert server.backup_paths is None
        assert server.db_selected is None

    def test_delete_cascades_to_logs_and_cron_jobs(self, db, server, backup_log, cron_job):
        db.session.delete(server)
        db.session.commit()

        assert BackupLog.query.count() == 0
        assert CronJob.query.count() == 0

    def test_repr(self, server):
        assert repr(server) == '<Server Web 1 deploy@10.0.0.5:22>'


class TestBackupLogModel:
    """Test BackupLog model."""

    def test_defaults(self, db, server):
        record = BackupLog(server_id=server.id)
        db.session.add(record)
        db.session.commit()

        assert record.status == 'pending'
        assert record.created_at is not None
        assert record.started_at is None
        assert record.finished_at is None

    @pytest.mark.parametrize('status,terminal', [
        ('pending', False),
        ('running', False),
        ('success', True),
        ('failed', True),
    ])
    def test_is_terminal(self, status, terminal):
        assert BackupLog(status=status).is_terminal is terminal

    def test_server_relationship(self, backup_log, server):
        assert backup_log.server is server
        assert server.logs.count() == 1


class TestCronJobModel:
    """Test CronJob model."""

    def test_policy_without_server(self, db):
        job = CronJob(name='all servers', schedule_type='daily', schedule='0 2 * * *')
        db.session.add(job)
        db.session.commit()

        assert job.server is None
        assert job.enabled is True
        assert job.last_run is None

    def test_updated_at_changes_on_update(self, db, cron_job):
        before = cron_job.updated_at
        cron_job.schedule_time = '03:00'
        db.session.commit()

        assert cron_job.updated_at >= before

    def test_repr(self, cron_job):
        assert repr(cron_job) == '<CronJob nightly schedule="30 2 * * *" enabled=True>'


class TestServerRunLockModel:
    """Test ServerRunLock model."""

    def test_one_lock_per_server(self, db, server, backup_log):
        server_id, backup_log_id = server.id, backup_log.id
        db.session.add(ServerRunLock(server_id=server_id, backup_log_id=backup_log_id))
        db.session.commit()
        db.session.expunge_all()

        db.session.add(ServerRunLock(server_id=server_id, backup_log_id=backup_log_id))

        with pytest.raises(Exception):  # IntegrityError
            db.session.commit()

    def test_acquired_at_auto_set(self, db, server, backup_log):
        before = datetime.utcnow()
        lock = ServerRunLock(server_id=server.id, backup_log_id=backup_log.id)
        db.session.add(lock)
        db.session.commit()

        assert lock.acquired_at >= before
