"""
Unit tests for command channels (serverbackup/backup/channel.py).

Paramiko and subprocess are mocked; no network access.
"""

import socket
import subprocess
from unittest.mock import MagicMock, patch

import paramiko
import pytest

from serverbackup.backup.channel import (
    ChannelError,
    ConnectFailed,
    LocalExecFailed,
    RemoteChannel,
    RemoteExecFailed,
    run_local,
)
from serverbackup.backup.target import TargetSpec


class ScriptedSession:
    """Paramiko Channel double that replays scripted output chunks."""

    def __init__(self, stdout=(), stderr=(), exit_status=0):
        self.stdout = list(stdout)
        self.stderr = list(stderr)
        self.exit_status = exit_status
        self.command = None
        self.closed = False

    def exec_command(self, command):
        self.command = command

    def recv_ready(self):
        return bool(self.stdout)

    def recv(self, size):
        return self.stdout.pop(0)

    def recv_stderr_ready(self):
        return bool(self.stderr)

    def recv_stderr(self, size):
        return self.stderr.pop(0)

    def exit_status_ready(self):
        return not self.stdout and not self.stderr

    def recv_exit_status(self):
        return self.exit_status

    def close(self):
        self.closed = True


def password_target(**overrides):
    values = dict(host='10.0.0.5', username='deploy', port=2222, password='secret')
    values.update(overrides)
    return TargetSpec(**values)


def attach_sessions(mock_ssh_client, *sessions):
    transport = mock_ssh_client.return_value.get_transport.return_value
    transport.open_session.side_effect = list(sessions)
    return transport


class TestConnect:
    """Test SSH connection setup."""

    def test_password_wins_over_key(self, mock_ssh_client, tmp_path):
        key = tmp_path / 'id_rsa'
        key.write_text('key')
        channel = RemoteChannel(password_target(private_key_path=str(key)), connect_timeout=12)

        channel.connect()

        kwargs = mock_ssh_client.return_value.connect.call_args[1]
        assert kwargs['hostname'] == '10.0.0.5'
        assert kwargs['port'] == 2222
        assert kwargs['username'] == 'deploy'
        assert kwargs['password'] == 'secret'
        assert kwargs['timeout'] == 12
        assert 'key_filename' not in kwargs

    def test_private_key(self, mock_ssh_client, tmp_path):
        key = tmp_path / 'id_ed25519'
        key.write_text('key')
        channel = RemoteChannel(password_target(password=None, private_key_path=str(key)))

        channel.connect()

        kwargs = mock_ssh_client.return_value.connect.call_args[1]
        assert kwargs['key_filename'] == str(key)
        assert 'password' not in kwargs

    def test_missing_key_file(self, mock_ssh_client):
        channel = RemoteChannel(password_target(password=None, private_key_path='/nonexistent/id_rsa'))

        with pytest.raises(ConnectFailed, match='Private key not found'):
            channel.connect()

    def test_no_credentials(self, mock_ssh_client):
        channel = RemoteChannel(password_target(password=None))

        with pytest.raises(ConnectFailed, match='Either password or private key'):
            channel.connect()

    def test_authentication_failure(self, mock_ssh_client):
        mock_ssh_client.return_value.connect.side_effect = paramiko.AuthenticationException('denied')
        channel = RemoteChannel(password_target())

        with pytest.raises(ConnectFailed, match='authentication failed'):
            channel.connect()
        mock_ssh_client.return_value.close.assert_called()

    def test_network_failure(self, mock_ssh_client):
        mock_ssh_client.return_value.connect.side_effect = OSError('No route to host')
        channel = RemoteChannel(password_target())

        with pytest.raises(ConnectFailed, match='No route to host'):
            channel.connect()

    def test_connection_reused(self, mock_ssh_client):
        attach_sessions(mock_ssh_client, ScriptedSession(), ScriptedSession())
        channel = RemoteChannel(password_target())

        channel.run(['true'])
        channel.run(['true'])

        assert mock_ssh_client.call_count == 1
        assert mock_ssh_client.return_value.connect.call_count == 1

    def test_close(self, mock_ssh_client):
        channel = RemoteChannel(password_target())
        channel.connect()

        channel.close()

        mock_ssh_client.return_value.close.assert_called_once()
        assert channel.ssh_client is None

    def test_context_manager_closes(self, mock_ssh_client):
        with RemoteChannel(password_target()) as channel:
            channel.connect()

        mock_ssh_client.return_value.close.assert_called_once()


class TestRun:
    """Test remote command execution."""

    def test_argv_is_shell_quoted(self, mock_ssh_client):
        session = ScriptedSession()
        attach_sessions(mock_ssh_client, session)
        channel = RemoteChannel(password_target())

        channel.run(['tar', '-czf', '/tmp/a.tar.gz', '--exclude=*.log', '/var/www'])

        assert session.command == "tar -czf /tmp/a.tar.gz '--exclude=*.log' /var/www"
        assert session.closed

    def test_string_command_sent_verbatim(self, mock_ssh_client):
        session = ScriptedSession(stdout=[b'/usr/bin/pigz\n'])
        attach_sessions(mock_ssh_client, session)

        result = RemoteChannel(password_target()).run('command -v pigz', check=False)

        assert session.command == 'command -v pigz'
        assert result.exit_status == 0
        assert result.stdout == '/usr/bin/pigz\n'

    def test_output_forwarded_line_by_line(self, mock_ssh_client):
        session = ScriptedSession(stdout=[b'line one\nli', b'ne two\n'], stderr=[b'warn\n'])
        attach_sessions(mock_ssh_client, session)
        lines = []
        channel = RemoteChannel(password_target(), on_output=lines.append)

        result = channel.run(['ls'])

        assert lines == ['STDOUT: line one', 'STDERR: warn', 'STDOUT: line two']
        assert result.stdout == 'line one\nline two\n'
        assert result.stderr == 'warn\n'

    def test_unterminated_last_line_forwarded(self, mock_ssh_client):
        attach_sessions(mock_ssh_client, ScriptedSession(stdout=[b'done']))
        lines = []

        RemoteChannel(password_target(), on_output=lines.append).run(['echo'])

        assert lines == ['STDOUT: done']

    def test_multibyte_character_split_across_chunks(self, mock_ssh_client):
        encoded = 'café\n'.encode()
        attach_sessions(mock_ssh_client, ScriptedSession(stdout=[encoded[:4], encoded[4:]]))
        lines = []

        RemoteChannel(password_target(), on_output=lines.append).run(['echo'])

        assert lines == ['STDOUT: café']

    def test_nonzero_exit_raises(self, mock_ssh_client):
        attach_sessions(mock_ssh_client, ScriptedSession(stderr=[b'mkdir: Permission denied\n'], exit_status=1))

        with pytest.raises(RemoteExecFailed) as exc_info:
            RemoteChannel(password_target()).run(['mkdir', '-p', '/root/x'])

        assert exc_info.value.exit_status == 1
        assert 'Permission denied' in str(exc_info.value)
        assert isinstance(exc_info.value, ChannelError)

    def test_nonzero_exit_without_check(self, mock_ssh_client):
        attach_sessions(mock_ssh_client, ScriptedSession(exit_status=1))

        result = RemoteChannel(password_target()).run('command -v pigz', check=False)

        assert result.exit_status == 1

    def test_failing_sink_does_not_abort(self, mock_ssh_client):
        attach_sessions(mock_ssh_client, ScriptedSession(stdout=[b'a\nb\n']))
        sink = MagicMock(side_effect=RuntimeError('database is locked'))

        result = RemoteChannel(password_target(), on_output=sink).run(['ls'])

        assert result.exit_status == 0
        assert sink.call_count == 2

    def test_session_open_failure(self, mock_ssh_client):
        transport = mock_ssh_client.return_value.get_transport.return_value
        transport.open_session.side_effect = paramiko.SSHException('session refused')

        with pytest.raises(ConnectFailed, match='session refused'):
            RemoteChannel(password_target()).run(['ls'])

    @pytest.mark.parametrize('error', [
        socket.timeout('timed out'),
        paramiko.SSHException('Socket is closed'),
        ConnectionResetError('reset by peer'),
    ])
    def test_connection_lost_while_reading(self, mock_ssh_client, error):
        session = ScriptedSession(stdout=[b'partial'])
        session.recv = MagicMock(side_effect=error)
        attach_sessions(mock_ssh_client, session)

        with pytest.raises(ConnectFailed, match='lost while running command'):
            RemoteChannel(password_target()).run(['mysqldump', '--all-databases'])

        assert session.closed

    def test_connection_lost_waiting_for_exit_status(self, mock_ssh_client):
        session = ScriptedSession()
        session.recv_exit_status = MagicMock(side_effect=OSError('Broken pipe'))
        attach_sessions(mock_ssh_client, session)

        with pytest.raises(ConnectFailed, match='Broken pipe'):
            RemoteChannel(password_target()).run(['ls'])


class TestBrowseAndDatabases:
    """Test directory listing and database discovery."""

    def test_list_directory(self, mock_ssh_client):
        sftp = mock_ssh_client.return_value.open_sftp.return_value
        directory = MagicMock(filename='www', st_mode=0o040755)
        regular = MagicMock(filename='notes.txt', st_mode=0o100644)
        sftp.listdir_attr.return_value = [directory, regular]

        entries = RemoteChannel(password_target()).list_directory('/var')

        sftp.listdir_attr.assert_called_once_with('/var')
        assert entries == [{'name': 'www', 'type': 'dir'}, {'name': 'notes.txt', 'type': 'file'}]
        sftp.close.assert_called_once()

    def test_list_databases_filters_system_schemas(self, mock_ssh_client):
        probe = ScriptedSession(stdout=[b'/usr/bin/mysql\n'])
        listing = ScriptedSession(stdout=[b'information_schema\nshop\nmysql\nblog\nperformance_schema\nsys\n'])
        attach_sessions(mock_ssh_client, probe, listing)

        databases = RemoteChannel(password_target()).list_databases('root', 'pw', 'localhost', 3306)

        assert databases == ['shop', 'blog']
        assert listing.command.startswith('/usr/bin/mysql --protocol=tcp --host localhost --port=3306 --user root')

    def test_list_databases_without_client(self, mock_ssh_client):
        attach_sessions(mock_ssh_client, ScriptedSession(exit_status=1))

        with pytest.raises(ChannelError, match='MySQL client not found'):
            RemoteChannel(password_target()).list_databases('root')


class TestRunLocal:
    """Test local command execution."""

    @patch('serverbackup.backup.channel.subprocess.run')
    def test_success_forwards_output(self, mock_run):
        mock_run.return_value = subprocess.CompletedProcess(['rsync'], 0, 'sent 10 bytes\n', '')
        lines = []

        result = run_local(['rsync', '-az'], on_output=lines.append)

        assert result.exit_status == 0
        assert lines == ['Local STDOUT: sent 10 bytes']

    @patch('serverbackup.backup.channel.subprocess.run')
    def test_env_merged_over_environment(self, mock_run, monkeypatch):
        monkeypatch.setenv('PATH', '/usr/bin')
        mock_run.return_value = subprocess.CompletedProcess(['rsync'], 0, '', '')

        run_local(['rsync'], env={'SSHPASS': 'secret'})

        env = mock_run.call_args[1]['env']
        assert env['SSHPASS'] == 'secret'
        assert env['PATH'] == '/usr/bin'

    @patch('serverbackup.backup.channel.subprocess.run')
    def test_no_env_inherits(self, mock_run):
        mock_run.return_value = subprocess.CompletedProcess(['rsync'], 0, '', '')

        run_local(['rsync'])

        assert mock_run.call_args[1]['env'] is None

    @patch('serverbackup.backup.channel.subprocess.run')
    def test_nonzero_exit(self, mock_run):
        mock_run.return_value = subprocess.CompletedProcess(['rsync'], 12, '', 'rsync error: protocol\n')
        lines = []

        with pytest.raises(LocalExecFailed) as exc_info:
            run_local(['rsync'], on_output=lines.append)

        assert exc_info.value.returncode == 12
        assert 'rsync error: protocol' in str(exc_info.value)
        assert lines == ['Local STDERR: rsync error: protocol']

    @patch('serverbackup.backup.channel.subprocess.run')
    def test_missing_binary(self, mock_run):
        mock_run.side_effect = FileNotFoundError(2, 'No such file or directory', 'rsync')

        with pytest.raises(LocalExecFailed, match='Failed to start rsync'):
            run_local(['rsync'])
