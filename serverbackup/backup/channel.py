"""
Command execution on the backup target (SSH) and on the local host.

- RemoteChannel: one authenticated paramiko connection per run, used for
  exec (with live output forwarding) and SFTP
- run_local: subprocess execution for local tools such as rsync
"""

import codecs
import logging
import os
import stat
import subprocess
import time
from pathlib import Path
from typing import Callable, List, NamedTuple, Optional, Union

import paramiko
from paramiko import SSHClient, AutoAddPolicy

from .commands import (
    MYSQL_CLIENT_PROBE,
    SYSTEM_DATABASES,
    list_databases_command,
    to_command_line,
)


logger = logging.getLogger(__name__)

OutputSink = Callable[[str], None]

CHUNK_SIZE = 32768
POLL_INTERVAL = 0.05


class ChannelError(Exception):
    """Base class for command execution failures."""
    pass


class ConnectFailed(ChannelError):
    """Raised when the SSH connection or session cannot be established."""
    pass


class RemoteExecFailed(ChannelError):
    """Raised when a remote command exits non-zero."""

    def __init__(self, exit_status: Optional[int], command: str = '', stderr: str = ''):
        self.exit_status = exit_status
        self.command = command
        self.stderr = stderr
        message = f"Command failed with code {exit_status}"
        if stderr:
            message += f": {stderr.strip().splitlines()[-1]}"
        super().__init__(message)


class LocalExecFailed(ChannelError):
    """Raised when a local command cannot be started or exits non-zero."""

    def __init__(self, returncode: Optional[int], message: str):
        self.returncode = returncode
        super().__init__(message)


class CommandResult(NamedTuple):
    exit_status: int
    stdout: str
    stderr: str


class _LineForwarder:
    """Accumulates a byte stream and forwards complete lines to a sink."""

    def __init__(self, label: str, sink: Optional[OutputSink]):
        self.label = label
        self.sink = sink
        self._decoder = codecs.getincrementaldecoder('utf-8')(errors='replace')
        self._pending = ''
        self._chunks = []

    def feed(self, data: bytes):
        text = self._decoder.decode(data)
        self._chunks.append(text)
        self._pending += text
        *lines, self._pending = self._pending.split('\n')
        for line in lines:
            self._emit(line)

    def close(self):
        tail = self._decoder.decode(b'', final=True)
        if tail:
            self._chunks.append(tail)
            self._pending += tail
        if self._pending:
            self._emit(self._pending)
            self._pending = ''

    @property
    def text(self) -> str:
        return ''.join(self._chunks)

    def _emit(self, line: str):
        line = line.rstrip('\r')
        if not line.strip() or self.sink is None:
            return
        try:
            self.sink(f"{self.label}: {line}")
        except Exception as e:
            # Log persistence is best-effort; never abort the command for it
            logger.warning(f"Dropped {self.label} line: {e}")


class RemoteChannel:
    """
    Executes commands on a backup target over SSH.

    The connection is opened on first use and reused until close().
    """

    def __init__(self, target, on_output: Optional[OutputSink] = None, connect_timeout: int = 30):
        """
        Initialize remote channel.

        Args:
            target: TargetSpec with host, port, username and password or private key
            on_output: Callable receiving "STDOUT: ..." / "STDERR: ..." lines
            connect_timeout: Seconds allowed for TCP connect and SSH handshake
        """
        self.target = target
        self.on_output = on_output
        self.connect_timeout = connect_timeout
        self.ssh_client = None

    def connect(self) -> SSHClient:
        """
        Establish the SSH connection if not already open.

        Raises:
            ConnectFailed: If connection or authentication fails
        """
        if self.ssh_client is not None:
            return self.ssh_client

        connect_kwargs = {
            'hostname': self.target.host,
            'port': self.target.port,
            'username': self.target.username,
            'timeout': self.connect_timeout,
        }

        # Password wins over a private key
        if self.target.password:
            connect_kwargs['password'] = self.target.password
        elif self.target.private_key_path:
            key_path = Path(self.target.private_key_path).expanduser()
            if not key_path.exists():
                raise ConnectFailed(f"Private key not found: {self.target.private_key_path}")
            connect_kwargs['key_filename'] = str(key_path)
        else:
            raise ConnectFailed("Either password or private key must be provided")

        client = SSHClient()
        client.set_missing_host_key_policy(AutoAddPolicy())

        try:
            client.connect(**connect_kwargs)
        except paramiko.AuthenticationException as e:
            client.close()
            raise ConnectFailed(f"SSH authentication failed for {self.target.username}@{self.target.host}: {e}")
        except paramiko.SSHException as e:
            client.close()
            raise ConnectFailed(f"SSH connection to {self.target.host} failed: {e}")
        except OSError as e:
            client.close()
            raise ConnectFailed(f"Failed to connect to {self.target.host}:{self.target.port}: {e}")

        self.ssh_client = client
        return client

    def run(self, command: Union[str, List[str]], check: bool = True) -> CommandResult:
        """
        Execute a command and stream its output.

        Args:
            command: argv list (quoted with shlex.join) or a fixed command string
            check: Raise RemoteExecFailed on non-zero exit status

        Returns:
            CommandResult with exit status and collected output

        Raises:
            ConnectFailed: If no session can be opened or the connection drops
            RemoteExecFailed: If check is set and the command exits non-zero
        """
        command_line = command if isinstance(command, str) else to_command_line(command)
        client = self.connect()

        try:
            channel = client.get_transport().open_session()
            channel.exec_command(command_line)
        except (paramiko.SSHException, AttributeError) as e:
            raise ConnectFailed(f"Failed to open SSH session on {self.target.host}: {e}")

        stdout = _LineForwarder('STDOUT', self.on_output)
        stderr = _LineForwarder('STDERR', self.on_output)

        try:
            while True:
                received = False
                if channel.recv_ready():
                    stdout.feed(channel.recv(CHUNK_SIZE))
                    received = True
                if channel.recv_stderr_ready():
                    stderr.feed(channel.recv_stderr(CHUNK_SIZE))
                    received = True
                if not received:
                    if channel.exit_status_ready():
                        break
                    time.sleep(POLL_INTERVAL)

            exit_status = channel.recv_exit_status()
        except (paramiko.SSHException, OSError) as e:
            raise ConnectFailed(f"Connection to {self.target.host} lost while running command: {e}")
        finally:
            channel.close()

        stdout.close()
        stderr.close()

        if check and exit_status != 0:
            raise RemoteExecFailed(exit_status, command_line, stderr.text)

        return CommandResult(exit_status, stdout.text, stderr.text)

    def open_sftp(self) -> paramiko.SFTPClient:
        """
        Open an SFTP session on the existing connection.

        Raises:
            ConnectFailed: If the SFTP subsystem cannot be started
        """
        client = self.connect()
        try:
            return client.open_sftp()
        except (paramiko.SSHException, OSError) as e:
            raise ConnectFailed(f"SFTP session on {self.target.host} failed: {e}")

    def list_directory(self, path: str) -> List[dict]:
        """
        List a remote directory.

        Returns:
            List of {'name', 'type'} dicts, type being 'dir' or 'file'
        """
        sftp = self.open_sftp()
        try:
            entries = []
            for item in sftp.listdir_attr(path):
                is_dir = stat.S_ISDIR(item.st_mode or 0)
                entries.append({'name': item.filename, 'type': 'dir' if is_dir else 'file'})
            return entries
        finally:
            sftp.close()

    def list_databases(self, db_user: str, db_password: Optional[str] = None,
                       db_host: Optional[str] = None, db_port: Optional[int] = None) -> List[str]:
        """
        List user databases on the target's MySQL/MariaDB server.

        Raises:
            ChannelError: If no MySQL client exists on the host or the query fails
        """
        probe = self.run(MYSQL_CLIENT_PROBE, check=False)
        client = probe.stdout.strip().splitlines()[0] if probe.stdout.strip() else ''
        if probe.exit_status != 0 or not client:
            raise ChannelError("MySQL client not found on remote host")

        result = self.run(list_databases_command(client, db_user, db_password, db_host, db_port))
        names = [line.strip() for line in result.stdout.splitlines()]
        return [name for name in names if name and name not in SYSTEM_DATABASES]

    def close(self):
        """Close the SSH connection."""
        if self.ssh_client:
            try:
                self.ssh_client.close()
            except Exception as e:
                logger.debug(f"Error closing SSH connection to {self.target.host}: {e}")
            self.ssh_client = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


def run_local(argv: List[str], env: Optional[dict] = None,
              on_output: Optional[OutputSink] = None) -> CommandResult:
    """
    Run a command on the local host.

    Args:
        argv: Command and arguments
        env: Extra environment variables merged over os.environ
        on_output: Callable receiving "Local STDOUT: ..." / "Local STDERR: ..." lines

    Raises:
        LocalExecFailed: If the command cannot be started or exits non-zero
    """
    full_env = {**os.environ, **env} if env else None

    try:
        completed = subprocess.run(argv, capture_output=True, text=True, env=full_env)
    except OSError as e:
        raise LocalExecFailed(None, f"Failed to start {argv[0]}: {e}")

    for label, text in (('Local STDOUT', completed.stdout), ('Local STDERR', completed.stderr)):
        forwarder = _LineForwarder(label, on_output)
        forwarder.feed((text or '').encode())
        forwarder.close()

    if completed.returncode != 0:
        detail = (completed.stderr or '').strip().splitlines()
        message = f"{argv[0]} exited with code {completed.returncode}"
        if detail:
            message += f": {detail[-1]}"
        raise LocalExecFailed(completed.returncode, message)

    return CommandResult(completed.returncode, completed.stdout or '', completed.stderr or '')
