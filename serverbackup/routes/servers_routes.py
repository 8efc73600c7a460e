"""
Server routes - CRUD for backup targets, remote browsing and database listing.
"""

from flask import Blueprint, jsonify, request, current_app
from flask_login import login_required

from serverbackup import db
from serverbackup.models import Server, BackupLog, CronJob, ServerRunLock
from serverbackup.backup.channel import ChannelError, RemoteChannel
from serverbackup.backup.commands import validate_host, validate_identifier, validate_remote_path
from serverbackup.backup.target import TargetSpec
from serverbackup.utils.crypto import SecretError, get_secret_box


bp = Blueprint('servers', __name__, url_prefix='/api/servers')

BOOLEAN_FIELDS = ['backup_www', 'backup_logs', 'backup_nginx', 'backup_db']


def serialize_server(server: Server) -> dict:
    """Server as JSON. Passwords are never returned."""
    return {
        'id': server.id,
        'name': server.name,
        'host': server.host,
        'port': server.port,
        'username': server.username,
        'ssh_key_path': server.ssh_key_path,
        'has_password': bool(server.password_encrypted),
        'local_backup_path': server.local_backup_path,
        'backup_paths': server.backup_path_list,
        'backup_www': server.backup_www,
        'backup_logs': server.backup_logs,
        'backup_nginx': server.backup_nginx,
        'backup_db': server.backup_db,
        'db_host': server.db_host,
        'db_port': server.db_port,
        'db_user': server.db_user,
        'has_db_password': bool(server.db_password_encrypted),
        'db_selected': server.db_selected_list,
        'created_at': server.created_at.isoformat() if server.created_at else None
    }


def parse_port(value, label: str) -> int:
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{label} must be a number")
    if not 1 <= port <= 65535:
        raise ValueError(f"{label} must be between 1 and 65535")
    return port


def apply_server_payload(server: Server, data: dict, secret_box):
    """
    Copy request fields onto a Server.

    Only keys present in data are changed. An empty password clears the
    stored one; a missing key leaves it as is.

    Raises:
        ValueError: If a field is invalid (UnsafeArgument included)
    """
    if 'name' in data:
        name = (data['name'] or '').strip()
        if not name:
            raise ValueError("Server name is required")
        server.name = name

    if 'host' in data:
        server.host = validate_host((data['host'] or '').strip())

    if 'port' in data:
        server.port = parse_port(data['port'], 'Port')

    if 'username' in data:
        server.username = validate_identifier((data['username'] or '').strip(), 'username')

    if 'ssh_key_path' in data:
        server.ssh_key_path = (data['ssh_key_path'] or '').strip() or None

    if 'password' in data:
        server.password_encrypted = secret_box.encrypt_optional(data['password'])

    if 'local_backup_path' in data:
        server.local_backup_path = (data['local_backup_path'] or '').strip() or None

    if 'backup_paths' in data:
        paths = data['backup_paths'] or []
        if not isinstance(paths, list):
            raise ValueError("backup_paths must be a list")
        server.backup_path_list = [validate_remote_path(str(path).strip()) for path in paths if str(path).strip()]

    for field in BOOLEAN_FIELDS:
        if field in data:
            setattr(server, field, bool(data[field]))

    if 'db_host' in data:
        server.db_host = validate_host((data['db_host'] or 'localhost').strip())

    if 'db_port' in data:
        server.db_port = parse_port(data['db_port'] or 3306, 'Database port')

    if 'db_user' in data:
        db_user = (data['db_user'] or '').strip()
        server.db_user = validate_identifier(db_user, 'database user') if db_user else None

    if 'db_password' in data:
        server.db_password_encrypted = secret_box.encrypt_optional(data['db_password'])

    if 'db_selected' in data:
        names = data['db_selected'] or []
        if not isinstance(names, list):
            raise ValueError("db_selected must be a list")
        server.db_selected_list = [validate_identifier(str(name).strip(), 'database name') for name in names]


@bp.route('', methods=['GET'])
@login_required
def list_servers():
    servers = Server.query.order_by(Server.name).all()
    return jsonify([serialize_server(server) for server in servers])


@bp.route('/<int:server_id>', methods=['GET'])
@login_required
def get_server(server_id):
    server = db.get_or_404(Server, server_id)
    return jsonify(serialize_server(server))


@bp.route('', methods=['POST'])
@login_required
def create_server():
    """
    Create a backup target.

    Request body:
        - name, host, username: required
        - password or ssh_key_path: at least one
        - port, local_backup_path, backup_paths, backup_www, backup_logs,
          backup_nginx, backup_db, db_host, db_port, db_user, db_password,
          db_selected: optional
    """
    data = request.get_json(silent=True) or {}

    for field in ('name', 'host', 'username'):
        if not data.get(field):
            return jsonify({'error': f'{field} is required'}), 400

    if not data.get('password') and not data.get('ssh_key_path'):
        return jsonify({'error': 'Either password or ssh_key_path is required'}), 400

    server = Server()
    try:
        apply_server_payload(server, data, get_secret_box(current_app))
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    db.session.add(server)
    db.session.commit()
    current_app.logger.info(f"Server created: {server.name} ({server.username}@{server.host})")

    return jsonify(serialize_server(server)), 201


@bp.route('/<int:server_id>', methods=['PUT'])
@login_required
def update_server(server_id):
    server = db.get_or_404(Server, server_id)
    data = request.get_json(silent=True) or {}

    try:
        apply_server_payload(server, data, get_secret_box(current_app))
    except ValueError as e:
        db.session.rollback()
        return jsonify({'error': str(e)}), 400

    db.session.commit()
    return jsonify(serialize_server(server))


@bp.route('/<int:server_id>', methods=['DELETE'])
@login_required
def delete_server(server_id):
    """Delete a server with its run logs and cron jobs."""
    server = db.get_or_404(Server, server_id)
    backup_scheduler = current_app.extensions['backup_scheduler']

    cron_job_ids = [job.id for job in CronJob.query.filter_by(server_id=server_id).all()]
    for cron_job_id in cron_job_ids:
        backup_scheduler.stop_one(cron_job_id)

    ServerRunLock.query.filter_by(server_id=server_id).delete(synchronize_session=False)
    CronJob.query.filter_by(server_id=server_id).delete(synchronize_session=False)
    BackupLog.query.filter_by(server_id=server_id).delete(synchronize_session=False)
    db.session.delete(server)
    db.session.commit()

    current_app.logger.info(f"Server {server_id} deleted with {len(cron_job_ids)} cron jobs")
    return jsonify({'message': 'Server deleted'})


def _channel_for(server: Server) -> RemoteChannel:
    target = TargetSpec.from_server(server, get_secret_box(current_app))
    return RemoteChannel(target, connect_timeout=current_app.config['SSH_CONNECT_TIMEOUT'])


@bp.route('/<int:server_id>/browse', methods=['GET'])
@login_required
def browse(server_id):
    """
    List a remote directory, for picking backup paths.

    Query params:
        - path: Absolute remote path (default: /)
    """
    server = db.get_or_404(Server, server_id)
    path = request.args.get('path', '/').strip() or '/'

    try:
        validate_remote_path(path)
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    try:
        with _channel_for(server) as channel:
            entries = channel.list_directory(path)
    except (ChannelError, SecretError, OSError) as e:
        current_app.logger.warning(f"Browse of {path} on server {server_id} failed: {e}")
        return jsonify({'error': str(e)}), 502

    entries.sort(key=lambda entry: (entry['type'] != 'dir', entry['name']))
    return jsonify({'path': path, 'entries': entries})


@bp.route('/<int:server_id>/dbs', methods=['POST'])
@login_required
def list_databases(server_id):
    """
    List databases on the server's MySQL/MariaDB.

    Request body (all optional, defaults to the stored settings):
        - db_user, db_password, db_host, db_port
    """
    server = db.get_or_404(Server, server_id)
    data = request.get_json(silent=True) or {}

    try:
        db_user = (data.get('db_user') or server.db_user or '').strip()
        if not db_user:
            return jsonify({'error': 'Database user is required'}), 400
        validate_identifier(db_user, 'database user')

        db_password = data.get('db_password')
        if db_password is None:
            db_password = get_secret_box(current_app).decrypt_optional(server.db_password_encrypted)
        db_host = validate_host((data.get('db_host') or server.db_host or 'localhost').strip())
        db_port = parse_port(data.get('db_port') or server.db_port or 3306, 'Database port')
    except ValueError as e:
        return jsonify({'error': str(e)}), 400
    except SecretError as e:
        return jsonify({'error': str(e)}), 500

    try:
        with _channel_for(server) as channel:
            databases = channel.list_databases(db_user, db_password, db_host, db_port)
    except (ChannelError, SecretError, OSError) as e:
        current_app.logger.warning(f"Database listing on server {server_id} failed: {e}")
        return jsonify({'error': str(e)}), 502

    return jsonify({'databases': databases})
