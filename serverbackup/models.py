import json
from datetime import datetime
from flask_login import UserMixin
from serverbackup import db


RUN_STATUSES = ('pending', 'running', 'success', 'failed')
TERMINAL_STATUSES = ('success', 'failed')
SCHEDULE_TYPES = ('daily', 'weekly', 'monthly', 'custom')


class User(UserMixin, db.Model):
    """User model for authentication"""
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f'<User {self.username}>'


class AppSettings(db.Model):
    """Global application settings (single row)"""
    __tablename__ = 'settings'

    id = db.Column(db.Integer, primary_key=True)
    global_local_backup_path = db.Column(db.String(500))
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    @classmethod
    def current(cls):
        """Return the settings row, creating it on first access."""
        settings = cls.query.first()
        if settings is None:
            settings = cls()
            db.session.add(settings)
            db.session.commit()
        return settings

    def __repr__(self):
        return f'<AppSettings global_local_backup_path={self.global_local_backup_path}>'


class Server(db.Model):
    """A remote host configured as a backup target"""
    __tablename__ = 'servers'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    host = db.Column(db.String(255), nullable=False)
    port = db.Column(db.Integer, default=22, nullable=False)
    username = db.Column(db.String(255), nullable=False)
    ssh_key_path = db.Column(db.String(500))
    password_encrypted = db.Column(db.Text)  # Encrypted with SecretBox
    local_backup_path = db.Column(db.String(500))
    backup_paths = db.Column(db.Text)  # JSON list of extra remote paths

    backup_www = db.Column(db.Boolean, default=True, nullable=False)
    backup_logs = db.Column(db.Boolean, default=True, nullable=False)
    backup_nginx = db.Column(db.Boolean, default=True, nullable=False)
    backup_db = db.Column(db.Boolean, default=True, nullable=False)

    db_host = db.Column(db.String(255), default='localhost')
    db_port = db.Column(db.Integer, default=3306)
    db_user = db.Column(db.String(255))
    db_password_encrypted = db.Column(db.Text)
    db_selected = db.Column(db.Text)  # JSON list; empty means all databases

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    # Relationships
    logs = db.relationship('BackupLog', back_populates='server', cascade='all, delete-orphan', lazy='dynamic')
    cron_jobs = db.relationship('CronJob', back_populates='server', cascade='all, delete-orphan', lazy='dynamic')

    @property
    def backup_path_list(self):
        return json.loads(self.backup_paths) if self.backup_paths else []

    @backup_path_list.setter
    def backup_path_list(self, paths):
        self.backup_paths = json.dumps(list(paths)) if paths else None

    @property
    def db_selected_list(self):
        return json.loads(self.db_selected) if self.db_selected else []

    @db_selected_list.setter
    def db_selected_list(self, names):
        self.db_selected = json.dumps(list(names)) if names else None

    def __repr__(self):
        return f'<Server {self.name} {self.username}@{self.host}:{self.port}>'


class BackupLog(db.Model):
    """Execution record of one backup run"""
    __tablename__ = 'backup_logs'

    id = db.Column(db.Integer, primary_key=True)
    server_id = db.Column(db.Integer, db.ForeignKey('servers.id'), nullable=False)
    status = db.Column(db.String(20), nullable=False, default='pending')  # pending, running, success, failed
    logs = db.Column(db.Text)  # Appended line by line while the run progresses
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    started_at = db.Column(db.DateTime)
    finished_at = db.Column(db.DateTime)

    # Relationship
    server = db.relationship('Server', back_populates='logs')

    @property
    def is_terminal(self):
        return self.status in TERMINAL_STATUSES

    def __repr__(self):
        return f'<BackupLog server_id={self.server_id} status={self.status}>'


class CronJob(db.Model):
    """Recurring backup schedule policy"""
    __tablename__ = 'cron_jobs'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    server_id = db.Column(db.Integer, db.ForeignKey('servers.id'), nullable=True)  # NULL = every server
    schedule_type = db.Column(db.String(20), nullable=False)  # daily, weekly, monthly, custom
    schedule_time = db.Column(db.String(5))  # HH:MM
    schedule_day = db.Column(db.Integer)  # Day of week (weekly) or day of month (monthly)
    schedule = db.Column(db.String(100), nullable=False)  # Five-field cron expression
    enabled = db.Column(db.Boolean, default=True, nullable=False)
    last_run = db.Column(db.DateTime)
    next_run = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationship
    server = db.relationship('Server', back_populates='cron_jobs')

    def __repr__(self):
        return f'<CronJob {self.name} schedule="{self.schedule}" enabled={self.enabled}>'


class ServerRunLock(db.Model):
    """Marks a server as having a backup run in progress"""
    __tablename__ = 'server_run_locks'

    server_id = db.Column(db.Integer, db.ForeignKey('servers.id'), primary_key=True)
    backup_log_id = db.Column(db.Integer, db.ForeignKey('backup_logs.id'), nullable=False)
    acquired_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f'<ServerRunLock server_id={self.server_id} backup_log_id={self.backup_log_id}>'
