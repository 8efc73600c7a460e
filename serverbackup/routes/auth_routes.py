"""
Authentication routes: first-run setup, login, logout.
"""

from flask import Blueprint, jsonify, request, current_app
from flask_login import login_user, logout_user, login_required, current_user

from serverbackup.auth import authenticate, create_admin, setup_required


bp = Blueprint('auth', __name__, url_prefix='/api/auth')


@bp.route('/status', methods=['GET'])
def status():
    """Report whether setup is pending and who is logged in."""
    return jsonify({
        'setup_required': setup_required(),
        'authenticated': current_user.is_authenticated,
        'username': current_user.username if current_user.is_authenticated else None
    })


@bp.route('/setup', methods=['POST'])
def setup():
    """
    Create the admin account. Only possible while no account exists.

    Request body:
        - username: Admin username (required)
        - password: Admin password (required, strength rules apply)
        - password_confirm: Must match password when given
    """
    if not setup_required():
        return jsonify({'error': 'Setup already completed'}), 409

    data = request.get_json(silent=True) or {}
    password = data.get('password', '')

    if 'password_confirm' in data and data['password_confirm'] != password:
        return jsonify({'error': 'Passwords do not match'}), 400

    try:
        user = create_admin(data.get('username', ''), password)
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    login_user(user, remember=True)
    current_app.logger.info(f"Admin account created: {user.username}")

    return jsonify({'message': 'Setup completed successfully', 'username': user.username}), 201


@bp.route('/login', methods=['POST'])
def login():
    """Log in with username and password."""
    data = request.get_json(silent=True) or {}
    username = data.get('username', '').strip()
    password = data.get('password', '')

    if not username or not password:
        return jsonify({'error': 'Username and password are required'}), 400

    user = authenticate(username, password)
    if user is None:
        current_app.logger.warning(f"Failed login attempt for user: {username}")
        return jsonify({'error': 'Invalid username or password'}), 401

    login_user(user, remember=True)
    return jsonify({'message': 'Login successful', 'username': user.username})


@bp.route('/logout', methods=['POST'])
@login_required
def logout():
    logout_user()
    return jsonify({'message': 'Logged out'})
