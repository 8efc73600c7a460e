"""
Argument construction for the external tools a backup run drives.

Every command is built as an argv list from allow-listed values, never by
string concatenation:
- tar (optionally through pigz) for directory archives
- mysqldump / mariadb-dump for database dumps
- rsync over ssh (or sshpass + ssh) for the bulk transfer
- mkdir / rm for the remote working directory
"""

import re
import shlex
from datetime import date
from typing import List, Optional, Tuple


class UnsafeArgument(ValueError):
    """Raised when a value does not match the allow-list for its kind."""
    pass


SAFE_NAME_RE = re.compile(r'[^A-Za-z0-9_.\-]')
REMOTE_PATH_RE = re.compile(r'^/[A-Za-z0-9_./@+\-]*$')
IDENTIFIER_RE = re.compile(r'^[A-Za-z0-9_.@$\-]+$')
HOST_RE = re.compile(r'^[A-Za-z0-9_.:\-]+$')

# Built-in path sets: (target flag, remote path, archive suffix)
BUILTIN_PATH_SETS = [
    ('backup_www', '/var/www', 'www_bak'),
    ('backup_logs', '/var/log', 'logs_bak'),
    ('backup_nginx', '/etc/nginx', 'nginx_bak'),
]

COMMON_EXCLUDES = ['.git', 'node_modules', '.cache', 'cache', 'tmp', '*.tmp', '*.log']

# Probes are fixed strings; they need shell semantics (command -v, ||)
PIGZ_PROBE = 'command -v pigz'
DUMP_CLIENT_PROBE = 'command -v mysqldump || command -v mariadb-dump'
MYSQL_CLIENT_PROBE = 'command -v mysql || command -v mariadb'

SYSTEM_DATABASES = {'information_schema', 'performance_schema', 'mysql', 'sys'}


def sanitize_name(value: str) -> str:
    """Collapse whitespace to underscores and drop anything outside [A-Za-z0-9_.-]."""
    return SAFE_NAME_RE.sub('', re.sub(r'\s+', '_', (value or '').strip()))


def safe_name(display_name: Optional[str], username: str, host: str) -> str:
    """
    Derive the file-name prefix for a target.

    Uses the display name, falling back to user@host when the name is empty
    or sanitizes to nothing. Never returns an empty string.
    """
    cleaned = sanitize_name(display_name) if display_name else ''
    if not cleaned:
        cleaned = sanitize_name(f"{username}@{host}")
    return cleaned or 'server'


def remote_workdir(tmp_root: str, safe: str, day: date) -> str:
    """Remote working directory: {tmp_root}/backup_{YYYY-MM-DD}_{safe}"""
    return f"{tmp_root.rstrip('/')}/{workdir_name(safe, day)}"


def workdir_name(safe: str, day: date) -> str:
    return f"backup_{day.isoformat()}_{safe}"


def custom_archive_suffix(path: str) -> str:
    """
    Archive suffix for an extra path.

    /srv/app/data/ -> custom__srv_app_data
    """
    flattened = path.rstrip('/').replace('/', '_')
    return f"custom_{SAFE_NAME_RE.sub('', flattened)}"


def validate_remote_path(path: str) -> str:
    if not path or not REMOTE_PATH_RE.match(path):
        raise UnsafeArgument(f"Unsupported remote path: {path!r}")
    return path


def validate_identifier(value: str, kind: str = 'identifier') -> str:
    if not value or not IDENTIFIER_RE.match(value):
        raise UnsafeArgument(f"Unsupported {kind}: {value!r}")
    return value


def validate_host(host: str) -> str:
    if not host or not HOST_RE.match(host):
        raise UnsafeArgument(f"Unsupported host: {host!r}")
    return host


def to_command_line(argv: List[str]) -> str:
    """Join an argv list for execution by the remote shell."""
    return shlex.join(str(arg) for arg in argv)


def mkdir_command(path: str) -> List[str]:
    return ['mkdir', '-p', validate_remote_path(path)]


def remove_command(path: str, tmp_root: str) -> List[str]:
    """rm -rf, restricted to directories below the remote temp root."""
    validate_remote_path(path)
    root = tmp_root.rstrip('/') + '/'
    if not path.startswith(root) or '..' in path.split('/') or path.rstrip('/') + '/' == root:
        raise UnsafeArgument(f"Refusing to remove {path!r} outside {root}")
    return ['rm', '-rf', path]


def tar_command(archive_path: str, source_path: str, use_pigz: bool,
                exclude_logs: bool = True) -> List[str]:
    """
    Build a tar invocation that archives source_path into archive_path.

    Args:
        archive_path: Destination .tar.gz on the remote host
        source_path: Directory to archive
        use_pigz: Compress through pigz instead of gzip
        exclude_logs: Apply the *.log exclude (off when archiving log directories)
    """
    validate_remote_path(archive_path)
    validate_remote_path(source_path)

    argv = ['tar']
    argv += ['-I', 'pigz', '-cf'] if use_pigz else ['-czf']
    argv.append(archive_path)
    argv += ['--ignore-failed-read', '--warning=no-file-changed']
    for pattern in COMMON_EXCLUDES:
        if pattern == '*.log' and not exclude_logs:
            continue
        argv.append(f'--exclude={pattern}')
    argv.append(source_path)
    return argv


def _db_connection_args(db_host: Optional[str], db_port: Optional[int],
                        db_user: str, db_password: Optional[str]) -> List[str]:
    args = ['--protocol=tcp', '--host', validate_host(db_host or 'localhost')]
    if db_port:
        args.append(f'--port={int(db_port)}')
    args += ['--user', validate_identifier(db_user, 'database user')]
    if db_password:
        args.append(f'--password={db_password}')
    return args


def mysqldump_command(client: str, result_file: str, db_user: str,
                      db_password: Optional[str] = None, db_host: Optional[str] = None,
                      db_port: Optional[int] = None, database: Optional[str] = None) -> List[str]:
    """
    Build a dump invocation writing to result_file.

    Dumps a single database when `database` is given, otherwise all databases.
    """
    validate_remote_path(client)
    validate_remote_path(result_file)

    argv = [client] + _db_connection_args(db_host, db_port, db_user, db_password)
    if database:
        argv += ['--databases', validate_identifier(database, 'database name')]
    else:
        argv.append('--all-databases')
    argv.append(f'--result-file={result_file}')
    return argv


def list_databases_command(client: str, db_user: str, db_password: Optional[str] = None,
                           db_host: Optional[str] = None, db_port: Optional[int] = None) -> List[str]:
    validate_remote_path(client)
    return ([client] + _db_connection_args(db_host, db_port, db_user, db_password)
            + ['-e', 'SHOW DATABASES;', '-s', '-N'])


def ssh_transport(port: int, password: Optional[str] = None,
                  private_key_path: Optional[str] = None) -> Tuple[List[str], dict]:
    """
    Build the ssh command rsync uses as its remote shell.

    Password wins over a private key. The password is handed to sshpass
    through the SSHPASS environment variable.

    Returns:
        Tuple of (ssh argv, extra environment)
    """
    if password:
        argv = ['sshpass', '-e', 'ssh', '-p', str(int(port)),
                '-o', 'StrictHostKeyChecking=no',
                '-o', 'PreferredAuthentications=password']
        return argv, {'SSHPASS': password}

    argv = ['ssh', '-p', str(int(port))]
    if private_key_path:
        argv += ['-i', private_key_path]
    argv += ['-o', 'StrictHostKeyChecking=no']
    return argv, {}


def rsync_command(username: str, host: str, port: int, remote_dir: str, local_dir: str,
                  password: Optional[str] = None,
                  private_key_path: Optional[str] = None) -> Tuple[List[str], dict]:
    """
    Build the rsync invocation mirroring remote_dir/ into local_dir/.

    Returns:
        Tuple of (argv, extra environment)
    """
    validate_identifier(username, 'username')
    validate_host(host)
    validate_remote_path(remote_dir)

    rsh, env = ssh_transport(port, password, private_key_path)
    argv = [
        'rsync', '-az', '--partial',
        '-e', shlex.join(rsh),
        f"{username}@{host}:{remote_dir.rstrip('/')}/",
        f"{local_dir.rstrip('/')}/",
    ]
    return argv, env
