"""
Explorer routes - browsing of local backups, local directories and not yet
saved servers.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path

from flask import Blueprint, jsonify, request, current_app, send_file
from flask_login import login_required

from serverbackup.models import AppSettings
from serverbackup.backup.channel import ChannelError, RemoteChannel
from serverbackup.backup.commands import validate_host, validate_identifier, validate_remote_path
from serverbackup.backup.target import TargetSpec
from serverbackup.routes.servers_routes import parse_port


bp = Blueprint('explorer', __name__, url_prefix='/api')
logger = logging.getLogger(__name__)


def backup_root() -> Path:
    """Global local backup root, else the built-in fallback."""
    configured = (AppSettings.current().global_local_backup_path or '').strip()
    return Path(configured or current_app.config['FALLBACK_BACKUP_DIR']).expanduser().resolve()


def _inside_backup_root(relative: str) -> Path:
    """
    Raises:
        ValueError: If relative could leave the backup root
    """
    if '..' in relative:
        raise ValueError("Invalid path")
    return backup_root() / relative.strip('/')


def _describe(entry: Path) -> dict:
    try:
        stats = entry.stat()
        size = stats.st_size
        modified = datetime.fromtimestamp(stats.st_mtime, tz=timezone.utc)
    except OSError as e:
        logger.warning(f"Failed to stat {entry}: {e}")
        size = 0
        modified = datetime.now(timezone.utc)

    return {
        'name': entry.name,
        'isDirectory': entry.is_dir(),
        'size': size,
        'date': modified.isoformat()
    }


@bp.route('/backups/list', methods=['GET'])
@login_required
def list_backups():
    """
    List a directory below the global local backup root.

    Query params:
        - path: Path relative to the backup root (default: the root itself)
    """
    relative = request.args.get('path', '')

    try:
        directory = _inside_backup_root(relative)
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    try:
        directory.mkdir(parents=True, exist_ok=True)
        files = [_describe(entry) for entry in directory.iterdir()]
    except (FileExistsError, NotADirectoryError):
        return jsonify({'error': 'Not a directory'}), 400
    except OSError as e:
        logger.error(f"Failed to list backups in {directory}: {e}")
        return jsonify({'error': f'Failed to list backup files: {e}'}), 500

    files.sort(key=lambda item: (not item['isDirectory'], item['name']))
    return jsonify({'files': files, 'currentPath': relative})


@bp.route('/backups/download', methods=['GET'])
@login_required
def download_backup():
    """
    Download one file below the global local backup root.

    Query params:
        - path: File path relative to the backup root
    """
    relative = request.args.get('path', '')
    if not relative.strip('/'):
        return jsonify({'error': 'path is required'}), 400

    try:
        file_path = _inside_backup_root(relative)
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    if not file_path.is_file():
        return jsonify({'error': 'File not found'}), 404

    logger.info(f"Backup file downloaded: {file_path}")
    return send_file(file_path, as_attachment=True, download_name=file_path.name)


@bp.route('/local/browse', methods=['GET'])
@login_required
def browse_local():
    """
    List a directory on this host, for picking local backup paths.

    Query params:
        - path: Local directory (default: home directory)
    """
    path = request.args.get('path') or str(Path.home())

    try:
        entries = [
            {'name': entry.name, 'type': 'dir' if entry.is_dir() else 'file'}
            for entry in Path(path).expanduser().iterdir()
        ]
    except OSError as e:
        logger.warning(f"Cannot read local directory {path}: {e}")
        return jsonify({'error': 'Cannot read local directory'}), 400

    entries.sort(key=lambda entry: (entry['type'] != 'dir', entry['name']))
    return jsonify({'path': path, 'entries': entries})


def _adhoc_target(data: dict) -> TargetSpec:
    """
    Connection parameters for a server that is not saved yet.

    Raises:
        ValueError: If a field is missing or invalid
    """
    host = (data.get('host') or '').strip()
    username = (data.get('username') or data.get('user') or '').strip()
    if not host or not username:
        raise ValueError("Missing SSH connection fields")

    password = data.get('password') or None
    ssh_key_path = (data.get('ssh_key_path') or '').strip() or None
    if not password and not ssh_key_path:
        raise ValueError("Either password or ssh_key_path is required")

    return TargetSpec(
        host=validate_host(host),
        username=validate_identifier(username, 'username'),
        port=parse_port(data.get('port') or 22, 'Port'),
        password=password,
        private_key_path=ssh_key_path,
    )


def _open_channel(target: TargetSpec) -> RemoteChannel:
    return RemoteChannel(target, connect_timeout=current_app.config['SSH_CONNECT_TIMEOUT'])


@bp.route('/browse', methods=['POST'])
@login_required
def browse_adhoc():
    """
    List a remote directory with credentials from the request.

    Request body:
        - host, username (or user): required
        - password or ssh_key_path: at least one
        - port (default 22), path (default /)
    """
    data = request.get_json(silent=True) or {}
    path = (data.get('path') or '/').strip() or '/'

    try:
        target = _adhoc_target(data)
        validate_remote_path(path)
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    try:
        with _open_channel(target) as channel:
            entries = channel.list_directory(path)
    except (ChannelError, OSError) as e:
        logger.warning(f"Browse of {path} on {target.host} failed: {e}")
        return jsonify({'error': str(e)}), 502

    entries.sort(key=lambda entry: (entry['type'] != 'dir', entry['name']))
    return jsonify({'path': path, 'entries': entries})


@bp.route('/dbs', methods=['POST'])
@login_required
def list_databases_adhoc():
    """
    List databases on a host that is not saved yet.

    Request body:
        - SSH fields as for POST /api/browse
        - db_user: required
        - db_password, db_host (default localhost), db_port (default 3306)
    """
    data = request.get_json(silent=True) or {}

    try:
        target = _adhoc_target(data)
        db_user = (data.get('db_user') or '').strip()
        if not db_user:
            return jsonify({'error': 'Database user is required'}), 400
        validate_identifier(db_user, 'database user')
        db_host = validate_host((data.get('db_host') or 'localhost').strip())
        db_port = parse_port(data.get('db_port') or 3306, 'Database port')
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    try:
        with _open_channel(target) as channel:
            databases = channel.list_databases(db_user, data.get('db_password'), db_host, db_port)
    except (ChannelError, OSError) as e:
        logger.warning(f"Database listing on {target.host} failed: {e}")
        return jsonify({'error': str(e)}), 502

    return jsonify({'databases': databases})
