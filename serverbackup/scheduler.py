"""
APScheduler integration for recurring backups.

Manages:
- Translation of schedule policies (daily/weekly/monthly/custom) into cron
  expressions and APScheduler triggers
- The registry of active triggers, one per enabled policy
- Launching runs when a trigger fires or on manual "run now"
- Periodic resynchronisation with the cron_jobs table
"""

import logging
import re
import threading
from collections import namedtuple
from datetime import datetime, timezone
from typing import List, Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from serverbackup import db
from serverbackup.models import CronJob, Server
from serverbackup.backup.executor import append_log


logger = logging.getLogger(__name__)

DEFAULT_TIME = '02:00'
RESYNC_JOB_ID = 'policy_resync'

# Cron numbering: 0 and 7 are Sunday
_WEEKDAY_NAMES = ['sun', 'mon', 'tue', 'wed', 'thu', 'fri', 'sat', 'sun']
_WEEKDAY_NUMBERS = {name: number for number, name in enumerate(_WEEKDAY_NAMES[:7])}

Registration = namedtuple('Registration', ['job_id', 'expression', 'server_id'])


class ScheduleValidationFailed(ValueError):
    """Raised when a schedule policy cannot be turned into a valid trigger."""
    pass


class PolicyLoadFailed(Exception):
    """A single policy could not be registered while loading schedules."""

    def __init__(self, policy_id: int, cause: Exception):
        self.policy_id = policy_id
        self.cause = cause
        super().__init__(f"Failed to schedule policy {policy_id}: {cause}")


def _parse_time(value: Optional[str]):
    text = (value or '').strip() or DEFAULT_TIME
    match = re.match(r'^(\d{1,2}):(\d{1,2})$', text)
    if not match:
        raise ScheduleValidationFailed(f"Invalid time {value!r}, expected HH:MM")

    hour, minute = int(match.group(1)), int(match.group(2))
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ScheduleValidationFailed(f"Invalid time {value!r}, expected HH:MM")
    return hour, minute


def _parse_day(value, default: int, low: int, high: int, label: str) -> int:
    if value is None or value == '':
        return default
    try:
        day = int(value)
    except (TypeError, ValueError):
        raise ScheduleValidationFailed(f"Invalid {label}: {value!r}")
    if not low <= day <= high:
        raise ScheduleValidationFailed(f"Invalid {label}: {day} (expected {low}-{high})")
    return day


def schedule_to_cron(schedule_type: str, time: Optional[str] = None, day=None) -> str:
    """
    Derive a five-field cron expression from a simple schedule.

    Args:
        schedule_type: 'daily', 'weekly' or 'monthly'
        time: HH:MM, defaults to 02:00
        day: Day of week 0-6 (0 = Sunday, default 0) for weekly,
             day of month 1-31 (default 1) for monthly

    Raises:
        ScheduleValidationFailed: If the type is unknown or a value is out of range
    """
    hour, minute = _parse_time(time)

    if schedule_type == 'daily':
        return f"{minute} {hour} * * *"

    if schedule_type == 'weekly':
        weekday = _parse_day(day, 0, 0, 6, 'day of week')
        return f"{minute} {hour} * * {weekday}"

    if schedule_type == 'monthly':
        month_day = _parse_day(day, 1, 1, 31, 'day of month')
        return f"{minute} {hour} {month_day} * *"

    raise ScheduleValidationFailed(f"Unknown schedule type: {schedule_type!r}")


def _weekday_number(token: str) -> int:
    token = token.strip().lower()
    if token.isdigit():
        number = int(token)
        if number > 7:
            raise ScheduleValidationFailed(f"Invalid day of week: {token}")
        return number % 7
    if token[:3] in _WEEKDAY_NUMBERS:
        return _WEEKDAY_NUMBERS[token[:3]]
    raise ScheduleValidationFailed(f"Invalid day of week: {token}")


def _translate_day_of_week(field: str) -> str:
    """
    Convert a cron day-of-week field to APScheduler weekday names.

    APScheduler numbers weekdays from Monday = 0, cron from Sunday = 0,
    so numeric fields are expanded to explicit names.
    """
    if field == '*':
        return field

    days = set()
    for part in field.split(','):
        base, _, step_text = part.partition('/')
        step = 1
        if step_text:
            if not step_text.isdigit() or int(step_text) == 0:
                raise ScheduleValidationFailed(f"Invalid step in day of week: {part}")
            step = int(step_text)

        if base == '*':
            first, last = 0, 6
        elif '-' in base:
            start, end = base.split('-', 1)
            first, last = _weekday_number(start), _weekday_number(end)
            # 7 closes a range ending on Sunday
            if end.strip() == '7':
                last = 7
        else:
            first = _weekday_number(base)
            last = 6 if step_text else first

        if first > last:
            raise ScheduleValidationFailed(f"Invalid day-of-week range: {part}")
        days.update(number % 7 for number in range(first, last + 1, step))

    return ','.join(_WEEKDAY_NAMES[number] for number in sorted(days))


def build_trigger(expression: str, timezone: str = 'UTC') -> CronTrigger:
    """
    Build an APScheduler trigger from a five-field cron expression.

    Raises:
        ScheduleValidationFailed: If the expression is not valid
    """
    fields = (expression or '').split()
    if len(fields) != 5:
        raise ScheduleValidationFailed(
            f"Cron expression must have exactly 5 fields, got {len(fields)}: {expression!r}"
        )

    minute, hour, day, month, day_of_week = fields
    try:
        return CronTrigger(
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=_translate_day_of_week(day_of_week),
            timezone=timezone,
        )
    except ValueError as e:
        raise ScheduleValidationFailed(f"Invalid cron expression {expression!r}: {e}")


def validate_cron_expression(expression: str) -> str:
    """
    Validate a custom cron expression.

    Returns:
        The expression with whitespace normalised

    Raises:
        ScheduleValidationFailed: If it is not a valid five-field expression
    """
    build_trigger(expression)
    return ' '.join(expression.split())


def policy_expression(policy: CronJob) -> str:
    """Cron expression a policy should run on."""
    if policy.schedule_type == 'custom':
        return validate_cron_expression(policy.schedule)
    return schedule_to_cron(policy.schedule_type, policy.schedule_time, policy.schedule_day)


def _naive_utc(moment: Optional[datetime]) -> Optional[datetime]:
    if moment is None:
        return None
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


class BackupScheduler:
    """
    Registry of recurring backup triggers.

    One instance per process lives in app.extensions['backup_scheduler'];
    only the designated process starts it.
    """

    def __init__(self, app, launcher, timezone: str = 'UTC', scheduler=None):
        """
        Args:
            app: Flask app; trigger callbacks push their own app context
            launcher: RunLauncher used to start runs
            timezone: Timezone cron expressions are evaluated in
            scheduler: APScheduler instance (a BackgroundScheduler when omitted)
        """
        self.app = app
        self.launcher = launcher
        self.timezone = timezone
        self._registry = {}
        self._lock = threading.RLock()

        if scheduler is None:
            scheduler = BackgroundScheduler(
                executors={'default': ThreadPoolExecutor(max_workers=3)},
                job_defaults={
                    'coalesce': True,  # Combine missed firings into one
                    'max_instances': 1,
                    'misfire_grace_time': 300
                },
                timezone=timezone
            )
        self._scheduler = scheduler

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def start(self, resync_seconds: Optional[int] = None):
        """
        Start the underlying scheduler.

        Args:
            resync_seconds: Interval of the policy resync job; disabled when falsy
        """
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info("Backup scheduler started")

        if resync_seconds:
            self._scheduler.add_job(
                func=self._resync,
                trigger=IntervalTrigger(seconds=resync_seconds),
                id=RESYNC_JOB_ID,
                name='Policy resync',
                replace_existing=True
            )

    def shutdown(self, wait: bool = False):
        if self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
            logger.info("Backup scheduler stopped")

    def load_all(self) -> int:
        """
        Replace all triggers with those of the enabled policies.

        A policy that fails to register is logged and skipped.

        Returns:
            Number of policies registered
        """
        with self._lock:
            self.stop_all()

            policies = CronJob.query.filter_by(enabled=True).order_by(CronJob.id).all()
            loaded = 0
            for policy_id in [policy.id for policy in policies]:
                try:
                    if self.schedule_one(policy_id) is not None:
                        loaded += 1
                except Exception as e:
                    db.session.rollback()
                    logger.error(str(PolicyLoadFailed(policy_id, e)))

            logger.info(f"Loaded {loaded} of {len(policies)} backup schedules")
            return loaded

    def schedule_one(self, policy_id: int) -> Optional[datetime]:
        """
        (Re)register the trigger of one policy.

        Any existing trigger for the policy is removed first, so repeated
        calls leave at most one. The derived expression and next fire time
        are written back to the policy.

        Returns:
            Next fire time, or None when the policy is disabled

        Raises:
            LookupError: If the policy does not exist
            ScheduleValidationFailed: If its schedule is invalid
        """
        with self._lock:
            self.stop_one(policy_id)

            policy = db.session.get(CronJob, policy_id)
            if policy is None:
                raise LookupError(f"Cron job not found: {policy_id}")

            if not policy.enabled:
                logger.info(f"Cron job {policy.name} is disabled, not scheduling")
                return None

            expression = policy_expression(policy)
            trigger = build_trigger(expression, self.timezone)

            job = self._scheduler.add_job(
                func=self._fire,
                args=[policy_id],
                trigger=trigger,
                id=f"cron_{policy_id}",
                name=f"Backup: {policy.name}",
                replace_existing=True
            )

            next_run = trigger.get_next_fire_time(None, datetime.now(trigger.timezone))
            policy.schedule = expression
            policy.next_run = _naive_utc(next_run)
            db.session.commit()

            self._registry[policy_id] = Registration(job.id, expression, policy.server_id)
            logger.info(f"Scheduled cron job {policy.name} ({expression}), next run: {policy.next_run}")
            return next_run

    def stop_one(self, policy_id: int) -> bool:
        """
        Remove the trigger of one policy. Runs already launched continue.

        Returns:
            True if a trigger was registered
        """
        with self._lock:
            registration = self._registry.pop(policy_id, None)
            try:
                self._scheduler.remove_job(f"cron_{policy_id}")
            except JobLookupError:
                pass
            if registration:
                logger.info(f"Stopped cron job {policy_id}")
            return registration is not None

    def stop_all(self):
        with self._lock:
            for policy_id in list(self._registry):
                self.stop_one(policy_id)

    def list_active(self) -> List[int]:
        with self._lock:
            return sorted(self._registry)

    def run_now(self, policy_id: int) -> List[int]:
        """
        Launch the policy's runs immediately, whether or not it is scheduled.

        Returns:
            BackupLog ids of the launched runs

        Raises:
            LookupError: If the policy does not exist
        """
        policy = db.session.get(CronJob, policy_id)
        if policy is None:
            raise LookupError(f"Cron job not found: {policy_id}")
        return self._launch_policy(policy, "Manual cron run initiated...")

    def sync(self):
        """
        Reconcile registered triggers with the cron_jobs table.

        Only policies whose expression or server changed, appeared or
        disappeared are touched.
        """
        with self._lock:
            desired = {policy.id: policy for policy in CronJob.query.filter_by(enabled=True).all()}

            for policy_id in list(self._registry):
                if policy_id not in desired:
                    self.stop_one(policy_id)

            for policy_id, policy in desired.items():
                registration = self._registry.get(policy_id)
                try:
                    expression = policy_expression(policy)
                    if (registration is None or registration.expression != expression
                            or registration.server_id != policy.server_id):
                        self.schedule_one(policy_id)
                except Exception as e:
                    db.session.rollback()
                    self.stop_one(policy_id)
                    logger.error(str(PolicyLoadFailed(policy_id, e)))

    def _resync(self):
        with self.app.app_context():
            try:
                self.sync()
            except Exception as e:
                logger.error(f"Policy resync failed: {e}")

    def _fire(self, policy_id: int):
        """Trigger callback. Never raises, so the trigger stays registered."""
        with self.app.app_context():
            try:
                policy = db.session.get(CronJob, policy_id)
                if policy is None:
                    logger.warning(f"Cron job {policy_id} fired but no longer exists")
                    return

                log_ids = self._launch_policy(policy, "Scheduled backup initiated...")
                logger.info(f"Cron job {policy.name} launched runs {log_ids}")

                job = self._scheduler.get_job(f"cron_{policy_id}")
                # Jobs of a scheduler that has not started carry no next_run_time
                next_run = getattr(job, 'next_run_time', None) if job is not None else None
                if next_run:
                    policy.next_run = _naive_utc(next_run)
                    db.session.commit()

            except Exception as e:
                db.session.rollback()
                logger.error(f"Scheduled backup for cron job {policy_id} failed: {e}")

    def _launch_policy(self, policy: CronJob, message: str) -> List[int]:
        if policy.server_id is not None:
            servers = [policy.server] if policy.server is not None else []
            if not servers:
                logger.warning(f"Cron job {policy.name} refers to missing server {policy.server_id}")
        else:
            servers = Server.query.order_by(Server.id).all()

        log_ids = []
        for server_id in [server.id for server in servers]:
            try:
                log_id = self.launcher.create_run(server_id)
                append_log(log_id, message)
                self.launcher.submit(log_id)
                log_ids.append(log_id)
            except Exception as e:
                db.session.rollback()
                logger.error(f"Failed to launch backup of server {server_id} for cron job {policy.id}: {e}")

        policy.last_run = datetime.utcnow()
        db.session.commit()
        return log_ids
