"""
Reconciliation engine for the LDAP to Moodle user sync.

One run walks through a fixed sequence of steps: load the managed Moodle users,
suspend those that left the directory, read the LDAP entries changed since the
last run, plan creates and updates, execute the plan and finally store the new
sync timestamp. Bulk fetch failures abort the run; failures of single
create/update/suspend calls are logged and counted and the run carries on.
"""

import time
import logging
from datetime import datetime, timezone
from typing import Dict, List, Any, Optional, Callable, Iterable, Set

from ldap_moodle_sync.differ import FieldDiffer
from ldap_moodle_sync.logging_setup import security_logger, TRACE
from ldap_moodle_sync.models import MoodleUser, SourceRecord

logger = logging.getLogger(__name__)

ACTION_SUSPEND = 'suspend'
ACTION_CREATE = 'create'
ACTION_UPDATE = 'update'

FAILURE_ABORT = 'abort'
FAILURE_SKIP_REMOVALS = 'skip_removals'
TARGET_FAILURE_POLICIES = (FAILURE_ABORT, FAILURE_SKIP_REMOVALS)


class SyncError(Exception):
    """Base exception for sync errors."""
    pass


class TargetFetchError(SyncError):
    """Raised when the Moodle users could not be read and the run must stop."""
    pass


class AccountPolicy:
    """
    Decides which Moodle accounts the sync must never touch.

    Accounts are excluded by auth method (manual accounts by default), by
    Moodle user id (e.g. 1 for the primary admin) or by username.
    """

    def __init__(self, auth_methods: Iterable[str] = ('manual',),
                 user_ids: Iterable[int] = (), usernames: Iterable[str] = ()):
        self.auth_methods = {str(method).lower() for method in auth_methods}
        self.user_ids = {int(user_id) for user_id in user_ids}
        self.usernames = {str(name).strip().lower() for name in usernames}

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]]) -> 'AccountPolicy':
        config = config or {}
        return cls(
            auth_methods=config.get('auth_methods', ['manual']),
            user_ids=config.get('user_ids', []),
            usernames=config.get('usernames', [])
        )

    def is_excluded(self, user: MoodleUser) -> bool:
        if user.auth and str(user.auth).lower() in self.auth_methods:
            return True
        if user.id is not None and user.id in self.user_ids:
            return True
        return user.login in self.usernames


class PlannedAction:
    """One create, update or suspend call waiting to be executed."""

    def __init__(self, action: str, identifier: str, user: MoodleUser):
        self.action = action
        self.identifier = identifier
        self.user = user

    def __repr__(self):
        return f"PlannedAction({self.action!r}, {self.identifier!r})"


class ReconciliationPlan:
    """The three disjoint action lists of one run."""

    def __init__(self):
        self.to_suspend: List[PlannedAction] = []
        self.to_create: List[PlannedAction] = []
        self.to_update: List[PlannedAction] = []

    def add(self, action: str, identifier: str, user: MoodleUser):
        target = {
            ACTION_SUSPEND: self.to_suspend,
            ACTION_CREATE: self.to_create,
            ACTION_UPDATE: self.to_update,
        }[action]
        target.append(PlannedAction(action, identifier, user))

    def actions(self) -> List[PlannedAction]:
        """All actions in execution order: suspends, then creates, then updates."""
        return self.to_suspend + self.to_create + self.to_update

    def __len__(self):
        return len(self.to_suspend) + len(self.to_create) + len(self.to_update)


class SyncStats:
    """Counters and failure details reported at the end of a run."""

    def __init__(self, dry_run: bool = False):
        self.dry_run = dry_run
        self.created = 0
        self.updated = 0
        self.suspended = 0
        self.failed = 0
        self.excluded = 0
        self.unchanged = 0
        self.failures = []
        self.start_time = None
        self.end_time = None
        self.runtime_seconds = 0.0

    def record_success(self, action: str):
        if action == ACTION_CREATE:
            self.created += 1
        elif action == ACTION_UPDATE:
            self.updated += 1
        elif action == ACTION_SUSPEND:
            self.suspended += 1

    def record_failure(self, action: str, identifier: str, message: str):
        self.failed += 1
        self.failures.append((action, identifier, message))

    def as_dict(self) -> Dict[str, Any]:
        return {
            'dry_run': self.dry_run,
            'created': self.created,
            'updated': self.updated,
            'suspended': self.suspended,
            'failed': self.failed,
            'excluded': self.excluded,
            'unchanged': self.unchanged,
            'failures': list(self.failures),
            'start_time': self.start_time.isoformat() if self.start_time else None,
            'end_time': self.end_time.isoformat() if self.end_time else None,
            'runtime_seconds': self.runtime_seconds,
        }


class SyncContext:
    """Everything one run reads and builds; discarded when the run ends."""

    def __init__(self, full_sync: bool = False, dry_run: bool = False,
                 run_started: Optional[datetime] = None):
        self.full_sync = full_sync
        self.dry_run = dry_run
        self.run_started = run_started or datetime.now(timezone.utc)
        self.target_map: Dict[str, MoodleUser] = {}
        self.target_available = True
        self.source_identifiers: Set[str] = set()
        self.source_records: Dict[str, SourceRecord] = {}
        self.watermark: Optional[datetime] = None
        self.plan = ReconciliationPlan()
        self.stats = SyncStats(dry_run=dry_run)
        self.completed = False


class ReconciliationEngine:
    """
    Keeps the directory-managed Moodle users in line with LDAP.

    Collaborators:
        source: LDAPClient-like object with fetch_identifiers() and fetch_records(since)
        target: MoodleClient-like object with fetch_users(), create_user(user),
            update_user(patch) and suspend_user(user, reason)
        mapping: MappingStrategy filling MoodleUsers from SourceRecords
        state: SyncState holding the watermark
    """

    def __init__(self, source, target, mapping, state,
                 differ: Optional[FieldDiffer] = None,
                 policy: Optional[AccountPolicy] = None,
                 state_name: str = 'moodle-users',
                 on_target_fetch_failure: str = FAILURE_ABORT,
                 clock: Optional[Callable[[], datetime]] = None):
        if on_target_fetch_failure not in TARGET_FAILURE_POLICIES:
            raise ValueError(f"Invalid on_target_fetch_failure: {on_target_fetch_failure}")
        self.source = source
        self.target = target
        self.mapping = mapping
        self.state = state
        self.differ = differ or FieldDiffer()
        self.policy = policy or AccountPolicy()
        self.state_name = state_name
        self.on_target_fetch_failure = on_target_fetch_failure
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def run(self, full_sync: bool = False, dry_run: bool = False) -> SyncStats:
        """
        Execute one sync run.

        Args:
            full_sync: Ignore the stored watermark and compare every LDAP entry
            dry_run: Plan and report everything but never call the mutation API

        Returns:
            SyncStats of the run

        Raises:
            TargetFetchError: If Moodle users could not be read (abort policy)
            LDAPConnectionError, LDAPQueryError: If LDAP could not be read
            StateError: If the sync state could not be read or written
        """
        context = SyncContext(full_sync=full_sync, dry_run=dry_run, run_started=self.clock())
        context.stats.start_time = context.run_started
        started = time.monotonic()

        logger.info(f"Starting sync run (full_sync={full_sync}, dry_run={dry_run})")
        try:
            self._load_target(context)
            self._detect_removals(context)
            self._determine_watermark(context)
            self._load_source_delta(context)
            self._reconcile_delta(context)
            self._execute(context)
            context.completed = True
            self._commit(context)
        finally:
            context.stats.end_time = self.clock()
            context.stats.runtime_seconds = time.monotonic() - started

        self._log_summary(context.stats)
        return context.stats

    def _load_target(self, context: SyncContext):
        users = self.target.fetch_users()
        if users is None:
            if self.on_target_fetch_failure == FAILURE_ABORT:
                raise TargetFetchError("Failed to read Moodle users, aborting sync run")
            logger.error("Failed to read Moodle users, continuing without suspending anyone")
            context.target_available = False
            users = {}
        context.target_map = dict(users)
        logger.info(f"Loaded {len(context.target_map)} managed Moodle users")

    def _detect_removals(self, context: SyncContext):
        if not context.target_available:
            logger.warning("Skipping removal detection because Moodle users are unknown")
            return

        logger.info("Detecting users removed from LDAP")
        context.source_identifiers = self.source.fetch_identifiers()

        for identifier, user in context.target_map.items():
            if identifier in context.source_identifiers:
                continue
            if self.policy.is_excluded(user):
                logger.debug(f"User {identifier} is excluded from sync, not suspending")
                context.stats.excluded += 1
                continue
            if user.suspended:
                logger.debug(f"User {identifier} already suspended")
                continue
            context.plan.add(ACTION_SUSPEND, identifier, user)

        logger.info(f"{len(context.plan.to_suspend)} users to suspend")

    def _determine_watermark(self, context: SyncContext):
        context.watermark = self.state.get_watermark(self.state_name, full_sync=context.full_sync)
        logger.info(f"Reading LDAP entries modified since {context.watermark.isoformat()}")

    def _load_source_delta(self, context: SyncContext):
        context.source_records = self.source.fetch_records(since=context.watermark)

    def _reconcile_delta(self, context: SyncContext):
        total = len(context.source_records)
        for position, (identifier, record) in enumerate(context.source_records.items(), 1):
            logger.log(TRACE, f"{position}/{total} {identifier}")
            current = context.target_map.get(identifier)
            if current is not None:
                self._plan_update(context, identifier, record, current)
            else:
                self._plan_create(context, identifier, record)

        logger.info(f"{len(context.plan.to_create)} users to create, "
                    f"{len(context.plan.to_update)} users to update")

    def _plan_update(self, context: SyncContext, identifier: str,
                     record: SourceRecord, current: MoodleUser):
        if self.policy.is_excluded(current):
            logger.debug(f"User {identifier} is excluded from sync, not updating")
            context.stats.excluded += 1
            return

        candidate = MoodleUser(id=current.id, username=current.username)
        try:
            self.mapping.apply(ACTION_UPDATE, candidate, record)
        except Exception as e:
            logger.error(f"Mapping failed for update of {identifier}: {e}")
            context.stats.record_failure(ACTION_UPDATE, identifier, str(e))
            return

        patch = self.differ.diff(current, candidate)
        if patch is None:
            context.stats.unchanged += 1
            return
        context.plan.add(ACTION_UPDATE, identifier, patch)

    def _plan_create(self, context: SyncContext, identifier: str, record: SourceRecord):
        user = MoodleUser(username=identifier, auth=getattr(self.target, 'auth_method', 'ldap'))
        try:
            self.mapping.apply(ACTION_CREATE, user, record)
        except Exception as e:
            logger.error(f"Mapping failed for creation of {identifier}: {e}")
            context.stats.record_failure(ACTION_CREATE, identifier, str(e))
            return
        context.plan.add(ACTION_CREATE, identifier, user)

    def _execute(self, context: SyncContext):
        for planned in context.plan.actions():
            if context.dry_run:
                logger.info(f"{planned.action.upper()} DRY RUN: {planned.identifier} "
                            f"{planned.user.to_dict()}")
                context.stats.record_success(planned.action)
                continue

            try:
                self._apply(context, planned)
            except Exception as e:
                logger.error(f"*** {planned.action.upper()} FAILED *** {planned.identifier}: {e}")
                context.stats.record_failure(planned.action, planned.identifier, str(e))
                security_logger.log_user_operation(planned.action, planned.identifier, 'moodle', False)
                continue

            context.stats.record_success(planned.action)
            security_logger.log_user_operation(planned.action, planned.identifier, 'moodle', True)

    def _apply(self, context: SyncContext, planned: PlannedAction):
        if planned.action == ACTION_SUSPEND:
            logger.info(f"SUSPEND: {planned.identifier}")
            self.target.suspend_user(planned.user, reason='not found in LDAP')
            planned.user.suspended = True
        elif planned.action == ACTION_CREATE:
            logger.info(f"CREATE: {planned.identifier}")
            created = self.target.create_user(planned.user)
            context.target_map[planned.identifier] = created
        elif planned.action == ACTION_UPDATE:
            logger.info(f"UPDATE: {planned.identifier} {', '.join(planned.user.changed_fields())}")
            self.target.update_user(planned.user)
        else:
            raise SyncError(f"Unknown action {planned.action}")

    def _commit(self, context: SyncContext):
        if context.dry_run:
            logger.info("Dry run, sync timestamp not stored")
            return
        if not context.completed:
            return
        if not context.target_available:
            logger.warning("Moodle users were not read, sync timestamp not stored")
            return
        self.state.set_last_sync(self.state_name, context.run_started)

    def _log_summary(self, stats: SyncStats):
        prefix = "[DRY RUN] " if stats.dry_run else ""
        logger.info(f"=== {prefix}Sync Summary ===")
        logger.info(f"Runtime: {stats.runtime_seconds:.2f} seconds")
        logger.info(f"Users created: {stats.created}")
        logger.info(f"Users updated: {stats.updated}")
        logger.info(f"Users suspended: {stats.suspended}")
        logger.info(f"Users unchanged: {stats.unchanged}")
        logger.info(f"Users excluded: {stats.excluded}")
        logger.info(f"Failures: {stats.failed}")
        for action, identifier, message in stats.failures:
            logger.info(f"  {action} {identifier}: {message}")
