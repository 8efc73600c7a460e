"""
Shared pytest fixtures for server backup manager tests.

This module provides fixtures for:
- Flask app and test client
- Database setup with in-memory SQLite
- User and authentication fixtures
- Server, run log and cron job fixtures
- Fakes for the remote channel, the SSH client and the run launcher
"""

from unittest.mock import MagicMock, patch

import pytest

from serverbackup import create_app, db as _db
from serverbackup.models import User, Server, BackupLog, CronJob
from serverbackup.auth import hash_password
from serverbackup.backup.channel import CommandResult, RemoteExecFailed
from serverbackup.backup.commands import DUMP_CLIENT_PROBE, PIGZ_PROBE, to_command_line
from serverbackup.utils.crypto import SecretBox


@pytest.fixture(scope='function')
def app():
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite and never starts the scheduler.
    """
    app = create_app('testing')

    yield app

    app.extensions['run_launcher'].shutdown(wait=True)


@pytest.fixture(scope='function')
def db(app):
    """
    Create database with all tables.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def admin_user(db):
    """
    Create an admin user for testing authentication.

    Username: admin
    Password: Admin123
    """
    user = User(
        username='admin',
        password_hash=hash_password('Admin123')
    )
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture(scope='function')
def auth_client(client, admin_user):
    """Test client logged in as the admin user."""
    response = client.post('/api/auth/login', json={'username': 'admin', 'password': 'Admin123'})
    assert response.status_code == 200
    return client


@pytest.fixture(scope='function')
def secret_box(app):
    return SecretBox(app.config['SECRET_KEY'])


@pytest.fixture(scope='function')
def server(db, secret_box):
    """
    Create a password-authenticated server with only /var/www selected.
    """
    server = Server(
        name='Web 1',
        host='10.0.0.5',
        port=22,
        username='deploy',
        password_encrypted=secret_box.encrypt('ssh-secret'),
        backup_www=True,
        backup_logs=False,
        backup_nginx=False,
        backup_db=False,
        db_user='backup',
        db_password_encrypted=secret_box.encrypt('db-secret'),
    )
    db.session.add(server)
    db.session.commit()
    return server


@pytest.fixture(scope='function')
def backup_log(db, server):
    """Create a pending run log for the server fixture."""
    record = BackupLog(server_id=server.id, status='pending', logs='')
    db.session.add(record)
    db.session.commit()
    return record


@pytest.fixture(scope='function')
def cron_job(db, server):
    """
    Create a daily cron job for the server fixture (02:30 UTC).
    """
    job = CronJob(
        name='nightly',
        server_id=server.id,
        schedule_type='daily',
        schedule_time='02:30',
        schedule='30 2 * * *',
        enabled=True
    )
    db.session.add(job)
    db.session.commit()
    return job


class FakeChannel:
    """
    In-memory stand-in for RemoteChannel.

    Records every command line. Commands containing one of fail_on raise
    RemoteExecFailed (or return a non-zero result when check=False).
    """

    def __init__(self, pigz=True, dump_client='/usr/bin/mysqldump', fail_on=()):
        self.commands = []
        self.closed = False
        self.pigz = pigz
        self.dump_client = dump_client
        self.fail_on = fail_on

    def run(self, command, check=True):
        line = command if isinstance(command, str) else to_command_line(command)
        self.commands.append(line)

        if line == PIGZ_PROBE:
            return CommandResult(0, '/usr/bin/pigz\n', '') if self.pigz else CommandResult(1, '', '')

        if line == DUMP_CLIENT_PROBE:
            if self.dump_client:
                return CommandResult(0, f'{self.dump_client}\n', '')
            return CommandResult(1, '', '')

        for marker in self.fail_on:
            if marker in line:
                if check:
                    raise RemoteExecFailed(2, line, f'{marker.strip()} failed')
                return CommandResult(2, '', f'{marker.strip()} failed')

        return CommandResult(0, '', '')

    def commands_containing(self, text):
        return [line for line in self.commands if text in line]

    def close(self):
        self.closed = True


@pytest.fixture
def channel_factory():
    """FakeChannel class, called with the options a test needs."""
    return FakeChannel


class StubLauncher:
    """Creates real pending run logs but only records submissions."""

    def __init__(self):
        self.submitted = []

    def create_run(self, server_id):
        record = BackupLog(server_id=server_id, status='pending', logs='')
        _db.session.add(record)
        _db.session.commit()
        return record.id

    def submit(self, log_id):
        self.submitted.append(log_id)

    def launch(self, server_id):
        log_id = self.create_run(server_id)
        self.submit(log_id)
        return log_id

    def shutdown(self, wait=False):
        pass


@pytest.fixture
def stub_launcher():
    return StubLauncher()


@pytest.fixture
def app_launcher(app, stub_launcher):
    """
    Install a StubLauncher as the app's run launcher, so API calls that
    start backups never open SSH connections.
    """
    original = app.extensions['run_launcher']
    app.extensions['run_launcher'] = stub_launcher

    yield stub_launcher

    app.extensions['run_launcher'] = original


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient for SSH/SFTP testing.

    Returns the patched class; its return_value is the client instance.
    """
    with patch('serverbackup.backup.channel.SSHClient') as mock_ssh:
        # Mock SFTP client
        mock_sftp = MagicMock()
        mock_ssh.return_value.open_sftp.return_value = mock_sftp

        # Mock connection success
        mock_ssh.return_value.connect.return_value = None

        yield mock_ssh


@pytest.fixture(scope='function')
def mock_scheduler(app):
    """
    Replace the app's BackupScheduler with a MagicMock.
    """
    scheduler_instance = MagicMock()
    scheduler_instance.list_active.return_value = []
    original = app.extensions['backup_scheduler']
    app.extensions['backup_scheduler'] = scheduler_instance

    yield scheduler_instance

    app.extensions['backup_scheduler'] = original
