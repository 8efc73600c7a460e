"""
Backup run routes - start a run and follow its progress.
"""

from flask import Blueprint, jsonify, request, current_app
from flask_login import login_required

from serverbackup import db
from serverbackup.models import BackupLog, Server


bp = Blueprint('backup', __name__, url_prefix='/api/backup')


def serialize_log(record: BackupLog, include_logs: bool = True) -> dict:
    data = {
        'id': record.id,
        'server_id': record.server_id,
        'server_name': record.server.name if record.server else None,
        'status': record.status,
        'created_at': record.created_at.isoformat() if record.created_at else None,
        'started_at': record.started_at.isoformat() if record.started_at else None,
        'finished_at': record.finished_at.isoformat() if record.finished_at else None
    }
    if include_logs:
        data['logs'] = record.logs or ''
    return data


@bp.route('/<int:server_id>', methods=['POST'])
@login_required
def start_backup(server_id):
    """
    Start a backup of a server.

    The run is created as pending and executes in the background.

    Returns:
        JSON with the run's log_id
    """
    server = db.get_or_404(Server, server_id)
    launcher = current_app.extensions['run_launcher']

    log_id = launcher.launch(server.id)
    current_app.logger.info(f"Manual backup of {server.name} started (run {log_id})")

    return jsonify({'log_id': log_id, 'status': 'pending'}), 202


@bp.route('/<int:log_id>/status', methods=['GET'])
@login_required
def backup_status(log_id):
    record = db.get_or_404(BackupLog, log_id)
    return jsonify(serialize_log(record))


@bp.route('/logs', methods=['GET'])
@login_required
def list_logs():
    """
    List recent runs, newest first.

    Query params:
        - server_id: Only runs of this server
        - limit: Maximum number of runs (default 50, max 500)
        - include_logs: 'true' to include the log text
    """
    query = BackupLog.query

    server_id = request.args.get('server_id', type=int)
    if server_id is not None:
        query = query.filter_by(server_id=server_id)

    limit = min(max(request.args.get('limit', 50, type=int), 1), 500)
    include_logs = request.args.get('include_logs', 'false').lower() == 'true'

    records = query.order_by(BackupLog.created_at.desc(), BackupLog.id.desc()).limit(limit).all()
    return jsonify([serialize_log(record, include_logs) for record in records])
