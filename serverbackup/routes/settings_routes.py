"""
Settings routes - global backup settings and account password.
"""

import logging
from flask import Blueprint, jsonify, request
from flask_login import login_required, current_user

from serverbackup import db
from serverbackup.models import AppSettings
from serverbackup.auth import hash_password, verify_password, validate_password_strength


bp = Blueprint('settings', __name__, url_prefix='/api/settings')
logger = logging.getLogger(__name__)


def serialize_settings(settings: AppSettings) -> dict:
    return {
        'global_local_backup_path': settings.global_local_backup_path,
        'updated_at': settings.updated_at.isoformat() if settings.updated_at else None
    }


@bp.route('', methods=['GET'])
@login_required
def get_settings():
    return jsonify(serialize_settings(AppSettings.current()))


@bp.route('', methods=['PUT'])
@login_required
def update_settings():
    """
    Update global settings.

    Request body:
        - global_local_backup_path: Local root used by servers without their
          own path; empty or null falls back to the built-in default
    """
    data = request.get_json(silent=True) or {}
    settings = AppSettings.current()

    if 'global_local_backup_path' in data:
        value = data['global_local_backup_path']
        if value is not None and not isinstance(value, str):
            return jsonify({'error': 'global_local_backup_path must be a string'}), 400
        settings.global_local_backup_path = (value or '').strip() or None

    db.session.commit()
    logger.info(f"Settings updated: global_local_backup_path={settings.global_local_backup_path}")

    return jsonify(serialize_settings(settings))


@bp.route('/password', methods=['POST'])
@login_required
def change_password():
    """
    Change the logged-in user's password.

    Request body:
        - current_password, new_password (required)
    """
    data = request.get_json(silent=True) or {}
    current_password = data.get('current_password', '')
    new_password = data.get('new_password', '')

    if not current_password or not new_password:
        return jsonify({'error': 'Current and new password are required'}), 400

    if not verify_password(current_user.password_hash, current_password):
        return jsonify({'error': 'Current password is incorrect'}), 400

    is_valid, error_msg = validate_password_strength(new_password)
    if not is_valid:
        return jsonify({'error': error_msg}), 400

    current_user.password_hash = hash_password(new_password)
    db.session.commit()
    logger.info(f"Password changed for user {current_user.username}")

    return jsonify({'message': 'Password changed successfully'})
