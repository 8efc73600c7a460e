"""
Cron job routes - CRUD for backup schedules and manual triggering.
"""

from flask import Blueprint, jsonify, request, current_app
from flask_login import login_required

from serverbackup import db
from serverbackup.models import CronJob, Server, SCHEDULE_TYPES
from serverbackup.scheduler import ScheduleValidationFailed, policy_expression


bp = Blueprint('cron', __name__, url_prefix='/api/cron-jobs')


def _scheduler():
    return current_app.extensions['backup_scheduler']


def serialize_cron_job(job: CronJob, active_ids=()) -> dict:
    return {
        'id': job.id,
        'name': job.name,
        'server_id': job.server_id,
        'server_name': job.server.name if job.server else None,
        'schedule_type': job.schedule_type,
        'schedule_time': job.schedule_time,
        'schedule_day': job.schedule_day,
        'schedule': job.schedule,
        'enabled': job.enabled,
        'active': job.id in active_ids,
        'last_run': job.last_run.isoformat() if job.last_run else None,
        'next_run': job.next_run.isoformat() if job.next_run else None,
        'created_at': job.created_at.isoformat() if job.created_at else None,
        'updated_at': job.updated_at.isoformat() if job.updated_at else None
    }


def apply_cron_payload(job: CronJob, data: dict):
    """
    Copy request fields onto a CronJob and derive its cron expression.

    Raises:
        ValueError: If a field or the resulting schedule is invalid
    """
    previous_type = job.schedule_type

    if 'name' in data:
        name = (data['name'] or '').strip()
        if not name:
            raise ValueError("Cron job name is required")
        job.name = name

    if 'server_id' in data:
        server_id = data['server_id']
        if server_id in (None, ''):
            job.server_id = None
        else:
            if db.session.get(Server, int(server_id)) is None:
                raise ValueError(f"Server not found: {server_id}")
            job.server_id = int(server_id)

    if 'schedule_type' in data:
        if data['schedule_type'] not in SCHEDULE_TYPES:
            raise ValueError(f"Invalid schedule type. Valid options: {list(SCHEDULE_TYPES)}")
        job.schedule_type = data['schedule_type']

    if 'schedule_time' in data:
        job.schedule_time = (data['schedule_time'] or '').strip() or None

    if 'schedule_day' in data:
        day = data['schedule_day']
        job.schedule_day = None if day in (None, '') else int(day)

    if 'schedule' in data:
        job.schedule = (data['schedule'] or '').strip()

    if 'enabled' in data:
        job.enabled = bool(data['enabled'])

    if job.schedule_type == 'custom':
        # The stored expression of a preset is not a custom schedule
        if not job.schedule or (previous_type != 'custom' and 'schedule' not in data):
            raise ValueError("A cron expression is required for custom schedules")

    # ScheduleValidationFailed is a ValueError
    job.schedule = policy_expression(job)


def _register(job: CronJob):
    """Bring the trigger of a saved policy in line with its enabled flag."""
    if job.enabled:
        _scheduler().schedule_one(job.id)
    else:
        _scheduler().stop_one(job.id)


@bp.route('', methods=['GET'])
@login_required
def list_cron_jobs():
    jobs = CronJob.query.order_by(CronJob.created_at.desc()).all()
    active_ids = set(_scheduler().list_active())
    return jsonify([serialize_cron_job(job, active_ids) for job in jobs])


@bp.route('', methods=['POST'])
@login_required
def create_cron_job():
    """
    Create a backup schedule.

    Request body:
        - name: Cron job name (required)
        - schedule_type: daily, weekly, monthly or custom (required)
        - schedule_time: HH:MM (default 02:00)
        - schedule_day: Day of week 0-6 (weekly) or day of month 1-31 (monthly)
        - schedule: Five-field cron expression (custom only)
        - server_id: Server to back up; omit to back up every server
        - enabled: default true
    """
    data = request.get_json(silent=True) or {}

    if not data.get('name'):
        return jsonify({'error': 'Cron job name is required'}), 400
    if not data.get('schedule_type'):
        return jsonify({'error': 'Schedule type is required'}), 400

    job = CronJob(enabled=True)
    try:
        apply_cron_payload(job, data)
    except (ValueError, TypeError) as e:
        return jsonify({'error': str(e)}), 400

    db.session.add(job)
    db.session.commit()

    try:
        _register(job)
    except ScheduleValidationFailed as e:
        return jsonify({'error': str(e)}), 400

    return jsonify(serialize_cron_job(job, set(_scheduler().list_active()))), 201


@bp.route('/<int:job_id>', methods=['PUT'])
@login_required
def update_cron_job(job_id):
    job = db.get_or_404(CronJob, job_id)
    data = request.get_json(silent=True) or {}

    try:
        apply_cron_payload(job, data)
    except (ValueError, TypeError) as e:
        db.session.rollback()
        return jsonify({'error': str(e)}), 400

    db.session.commit()

    try:
        _register(job)
    except ScheduleValidationFailed as e:
        return jsonify({'error': str(e)}), 400

    return jsonify(serialize_cron_job(job, set(_scheduler().list_active())))


@bp.route('/<int:job_id>', methods=['DELETE'])
@login_required
def delete_cron_job(job_id):
    job = db.get_or_404(CronJob, job_id)

    _scheduler().stop_one(job.id)
    db.session.delete(job)
    db.session.commit()

    return jsonify({'message': 'Cron job deleted'})


@bp.route('/<int:job_id>/run-now', methods=['POST'])
@login_required
def run_cron_job_now(job_id):
    """Launch the cron job's backups immediately."""
    job = db.get_or_404(CronJob, job_id)
    log_ids = _scheduler().run_now(job.id)

    current_app.logger.info(f"Cron job {job.name} run manually: runs {log_ids}")
    return jsonify({'message': f'Started {len(log_ids)} backup(s)', 'log_ids': log_ids}), 202
