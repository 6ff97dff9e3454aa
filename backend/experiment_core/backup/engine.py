"""
Backup & Recovery Engine - durable snapshots of experiment state

This module keeps experiment data recoverable across reloads and crashes:
- Session backups on session start and end
- Periodic backups every 2 minutes while a session runs
- Event backups on designated events (e.g. death), with the last 10 events
- Emergency backups on page suspend, with the minimal critical fields
- Debounced backups for high-frequency events (5 s window)
- Storage health monitoring with standard/emergency eviction
- Recovery: list, load, restore into the shared state

Backup Kinds:
| Kind      | Trigger                    | Key                                  |
|-----------|----------------------------|--------------------------------------|
| session   | session start / end        | session_backup_<user>_<timestamp>    |
| periodic  | timer, debounce            | periodic_backup_<user>               |
| event     | significant event          | event_backup_<user>_<timestamp>      |
| emergency | page suspend               | emergency_backup_<user>              |

Usage:
    engine = BackupRecoveryEngine(state, bus, store, scheduler, tracker, host)
    engine.initialize()

    engine.create_backup('session')
    snapshot = engine.recover('latest')
    health = engine.health()
"""

import logging
from typing import Dict, List, Optional

from ..config import BackupConfig
from ..experiment.state import ExperimentState
from ..infra.bus import EventBus, Topic
from ..infra.clock import SystemClock
from ..infra.scheduler import Scheduler, TimerHandle
from ..infra.store import DurableStore, StoreError
from . import codec
from .health import StorageHealth, HealthStatus, assess_health, calculate_usage, error_health
from .records import BackupKind, BackupRecord, backup_key, parse_backup_key

logger = logging.getLogger(__name__)


class BackupRecoveryEngine:
    """
    Snapshots shared state to the durable store and restores it on demand.

    Gathers data from:
    - ExperimentState (order, metrics, current session)
    - SessionLifecycleTracker (history, analytics, active record)
    Writes back through the host's save_user_data / save_current_session.
    """

    def __init__(
        self,
        state: ExperimentState,
        bus: EventBus,
        store: DurableStore,
        scheduler: Scheduler,
        tracker: 'SessionLifecycleTracker',
        host: 'ExperimentManager',
        clock=None,
        config: Optional[BackupConfig] = None
    ):
        """
        Initialize backup engine.

        Args:
            state: Shared ExperimentState
            bus: Event bus (consumes lifecycle and significant events)
            store: Durable store backups are written to
            scheduler: Timer registration (periodic + debounce)
            tracker: Session tracker (history and analytics in snapshots)
            host: Provides save_user_data() and save_current_session()
            clock: Time source (defaults to SystemClock)
            config: Backup policy
        """
        self.state = state
        self.bus = bus
        self.store = store
        self.scheduler = scheduler
        self.tracker = tracker
        self.host = host
        self.clock = clock or SystemClock()
        self.config = config or BackupConfig()

        self._periodic_timer: Optional[TimerHandle] = None
        self._debounce_timer: Optional[TimerHandle] = None
        self.is_initialized = False

    # ------------------------------------------------------------------
    # Setup / teardown
    # ------------------------------------------------------------------

    def initialize(self):
        if self.is_initialized:
            return

        self.bus.subscribe(Topic.SESSION_STARTED, self.on_session_start)
        self.bus.subscribe(Topic.SESSION_ENDED, self.on_session_end)
        self.bus.subscribe(Topic.PAGE_SUSPEND, self.on_page_suspend)
        self.bus.subscribe(Topic.SIGNIFICANT_EVENT, self.on_significant_event)

        self.health()
        self.is_initialized = True

        logger.info(
            f"BackupRecoveryEngine initialized (periodic {self.config.periodic_interval:.0f}s, "
            f"capacity {self.config.max_storage_bytes / (1024 * 1024):.0f}MB)"
        )

    def shutdown(self):
        self._stop_periodic()
        self.scheduler.cancel(self._debounce_timer)
        self._debounce_timer = None
        self.is_initialized = False

    def _stop_periodic(self):
        self.scheduler.cancel(self._periodic_timer)
        self._periodic_timer = None

    # ------------------------------------------------------------------
    # Bus handlers
    # ------------------------------------------------------------------

    def on_session_start(self, payload: Optional[Dict] = None):
        self.create_session_backup()

        self._stop_periodic()
        self._periodic_timer = self.scheduler.call_every(
            self.config.periodic_interval, self._on_periodic_tick, name='periodic-backup'
        )

    def on_session_end(self, payload: Optional[Dict] = None):
        self._stop_periodic()
        self.create_session_backup()
        self.cleanup_old_backups()

    def on_page_suspend(self, payload: Optional[Dict] = None):
        self.create_emergency_backup()

    def on_significant_event(self, payload: Optional[Dict] = None):
        event_type = (payload or {}).get('type')

        if event_type in self.config.event_backup_types:
            self.create_event_backup(event_type)
        elif event_type in self.config.debounced_event_types:
            self.deferred_backup()

    def _on_periodic_tick(self):
        if self.state.is_experiment_active:
            self.create_periodic_backup()

    # ------------------------------------------------------------------
    # Backup creation
    # ------------------------------------------------------------------

    def create_backup(self, kind: str) -> bool:
        """Host-facing entry point; kind is a BackupKind value"""
        creators = {
            BackupKind.SESSION.value: self.create_session_backup,
            BackupKind.PERIODIC.value: self.create_periodic_backup,
            BackupKind.EVENT.value: lambda: self.create_event_backup('manual'),
            BackupKind.EMERGENCY.value: self.create_emergency_backup,
        }
        creator = creators.get(kind)
        if creator is None:
            logger.warning(f"Unknown backup kind: {kind}")
            return False
        return creator()

    def create_session_backup(self) -> bool:
        return self._write(BackupKind.SESSION, self.gather_session_data()) is not None

    def create_periodic_backup(self) -> bool:
        return self._write(BackupKind.PERIODIC, self.gather_live_data()) is not None

    def create_event_backup(self, event_type: str) -> bool:
        payload = {
            'type': 'event_backup',
            'event_type': event_type,
            'timestamp': self.clock.now_ms(),
            'user_id': self.state.user_id,
            'current_session': self.state.current_session,
            'recent_events': self.state.recent_events(self.config.event_recent_count),
        }
        return self._write(BackupKind.EVENT, payload) is not None

    def create_emergency_backup(self) -> bool:
        payload = {
            'type': 'emergency_backup',
            'timestamp': self.clock.now_ms(),
            'reason': 'page_unload',
            **self.gather_critical_data(),
        }
        return self._write(BackupKind.EMERGENCY, payload) is not None

    def deferred_backup(self):
        """Coalesce bursts of triggers into one periodic backup"""
        self.scheduler.cancel(self._debounce_timer)
        self._debounce_timer = self.scheduler.call_later(
            self.config.debounce_delay, self._flush_deferred, name='debounced-backup'
        )

    def _flush_deferred(self):
        self._debounce_timer = None
        self.create_periodic_backup()

    def _write(self, kind: BackupKind, payload: Dict) -> Optional[BackupRecord]:
        if not self.state.user_id:
            logger.warning(f"Skipping {kind.value} backup - no user ID")
            return None

        timestamp = self.clock.now_ms()
        try:
            key = backup_key(kind, self.state.user_id, timestamp)
            if not kind.single_slot:
                existing = set(self.store.keys())
                while key in existing:
                    timestamp += 1
                    key = backup_key(kind, self.state.user_id, timestamp)

            blob = codec.encode(payload, compress=self.config.compression_enabled)
            if blob is None:
                logger.error(f"{kind.value} backup failed: payload could not be encoded")
                return None

            self.store.set(key, blob)

        except StoreError as e:
            logger.error(f"{kind.value} backup failed: {e}", exc_info=True)
            return None

        current = self.state.current_session or {}
        logger.debug(
            f"{kind.value} backup created: {key} | size {len(blob)} | "
            f"events {len(current.get('events') or [])}"
        )
        return BackupRecord(key=key, kind=kind, timestamp=timestamp, payload=payload)

    # ------------------------------------------------------------------
    # Snapshot gathering
    # ------------------------------------------------------------------

    def gather_session_data(self) -> Dict:
        return {
            'type': 'session_backup',
            'timestamp': self.clock.now_ms(),
            'user_id': self.state.user_id,
            'session_order': self.state.session_order,
            'metrics': self.state.metrics,
            'current_session': self.state.current_session,
            'session_history': self.tracker.session_history,
            'analytics': self.tracker.analytics(),
        }

    def gather_live_data(self) -> Dict:
        record = self.tracker.current_session
        return {
            'type': 'live_backup',
            'timestamp': self.clock.now_ms(),
            'user_id': self.state.user_id,
            'current_session': self.state.current_session,
            'recent_events': self.state.recent_events(self.config.live_recent_count),
            'session_state': record.to_dict() if record is not None else None,
        }

    def gather_critical_data(self) -> Dict:
        return {
            'user_id': self.state.user_id,
            'current_session': self.state.current_session,
            'completed_sessions': self.state.completed_sessions_count(),
            'session_order': self.state.session_order,
            'last_events': self.state.recent_events(self.config.emergency_recent_count),
        }

    # ------------------------------------------------------------------
    # Listing / loading
    # ------------------------------------------------------------------

    def list_backups(self) -> List[BackupRecord]:
        """
        Backups of the active user, ascending by timestamp.

        Single-slot kinds carry no timestamp in their key; it is read from
        the stored payload instead.
        """
        user_id = self.state.user_id
        if not user_id:
            return []

        records = []
        for key in self.store.keys():
            record = parse_backup_key(key, user_id)
            if record is None:
                continue

            if record.timestamp == 0:
                payload = self.load_backup(key)
                timestamp = payload.get('timestamp') if isinstance(payload, dict) else None
                if isinstance(timestamp, int):
                    record = BackupRecord(key=key, kind=record.kind, timestamp=timestamp)

            records.append(record)

        return sorted(records, key=lambda r: r.timestamp)

    def load_backup(self, key: str):
        try:
            blob = self.store.get(key)
        except StoreError as e:
            logger.error(f"Failed to load backup {key}: {e}", exc_info=True)
            return None

        if blob is None:
            return None
        return codec.decode(blob)

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def recover(self, selector: str = 'latest') -> Optional[Dict]:
        """
        Load and restore a backup.

        Args:
            selector: 'latest', a kind name (first match) or an explicit key

        Returns:
            The restored snapshot, or None when nothing matched, the blob
            could not be decoded or restore rejected it
        """
        try:
            backups = self.list_backups()
        except StoreError as e:
            logger.error(f"Recovery failed: {e}", exc_info=True)
            return None

        if not backups:
            logger.warning("No backups found for recovery")
            return None

        kinds = {kind.value for kind in BackupKind}
        if selector == 'latest':
            target = backups[-1]
        elif selector in kinds:
            target = next((b for b in backups if b.kind.value == selector), None)
        else:
            target = next((b for b in backups if b.key == selector), None)

        if target is None:
            logger.warning(f"Backup not found: {selector}")
            return None

        snapshot = self.load_backup(target.key)
        if snapshot is None:
            return None

        if not self.restore(snapshot):
            return None

        logger.info(f"✓ Recovered from backup: {target.key}")
        return snapshot

    def restore(self, snapshot) -> bool:
        """Apply a snapshot to the shared state"""
        if not isinstance(snapshot, dict):
            logger.warning("Malformed snapshot - expected an object")
            return False

        backup_user = snapshot.get('user_id')
        if backup_user and backup_user != self.state.user_id:
            logger.warning(f"Backup user ID mismatch ({backup_user!r} != {self.state.user_id!r})")
            return False

        if snapshot.get('session_order') is not None:
            self.state.session_order = list(snapshot['session_order'])

        if snapshot.get('metrics') is not None:
            self.state.metrics = list(snapshot['metrics'])

        current = snapshot.get('current_session')
        if current and self.is_valid_session(current):
            self.state.current_session = current
            if self.tracker.current_session is not None:
                # tracker record and host session share one event list
                self.tracker.current_session.events = current['events']

        self.host.save_user_data()
        self.host.save_current_session()
        return True

    @staticmethod
    def is_valid_session(session) -> bool:
        return (
            isinstance(session, dict) and
            bool(session.get('user_id')) and
            bool(session.get('session_id')) and
            bool(session.get('speed_config')) and
            isinstance(session.get('events'), list)
        )

    # ------------------------------------------------------------------
    # Storage health / eviction
    # ------------------------------------------------------------------

    def health(self) -> StorageHealth:
        """
        Assess storage usage and evict when above thresholds.

        Returns the assessment taken before any cleanup ran.
        """
        try:
            usage = calculate_usage(self.store, self.state.user_id, self.config.max_storage_bytes)
        except StoreError as e:
            logger.error(f"Storage health check failed: {e}", exc_info=True)
            return error_health()

        health = assess_health(
            usage,
            self.config.max_storage_bytes,
            self.config.warning_percent,
            self.config.critical_percent,
        )

        if health.status is HealthStatus.CRITICAL:
            logger.warning(f"Storage critical ({health.utilization_percent:.0f}%), forcing cleanup")
            self.emergency_cleanup()
        elif health.status is HealthStatus.WARNING:
            logger.warning(f"Storage warning ({health.utilization_percent:.0f}%), running cleanup")
            self.cleanup_old_backups()

        logger.debug(f"Storage health: {health}")
        return health

    def _remove(self, records: List[BackupRecord]) -> int:
        for record in records:
            self.store.remove(record.key)
        return len(records)

    def cleanup_old_backups(self) -> bool:
        """Drop backups older than the max age, then the oldest beyond the cap"""
        try:
            backups = self.list_backups()
            now = self.clock.now_ms()
            max_age = self.config.max_backup_age * 1000

            expired = [b for b in backups if b.age(now) > max_age]
            remaining = [b for b in backups if b.age(now) <= max_age]
            excess = remaining[:max(0, len(remaining) - self.config.max_backups)]

            removed = self._remove(expired) + self._remove(excess)
            if removed:
                logger.info(f"Cleaned up {removed} backup(s) ({len(expired)} expired, {len(excess)} excess)")
            return True

        except StoreError as e:
            logger.error(f"Cleanup failed: {e}", exc_info=True)
            return False

    def emergency_cleanup(self) -> bool:
        """Drop backups older than one day and every periodic backup"""
        try:
            backups = self.list_backups()
            now = self.clock.now_ms()
            max_age = self.config.emergency_max_age * 1000

            doomed = [b for b in backups if b.age(now) > max_age or b.kind is BackupKind.PERIODIC]
            removed = self._remove(doomed)
            logger.info(f"Emergency cleanup completed ({removed} backup(s) removed)")
            return True

        except StoreError as e:
            logger.error(f"Emergency cleanup failed: {e}", exc_info=True)
            return False

    # ------------------------------------------------------------------
    # Export / diagnostics
    # ------------------------------------------------------------------

    def export_all(self) -> Dict:
        now = self.clock.now_ms()
        try:
            backups = [
                {**b.to_dict(now), 'data': self.load_backup(b.key)}
                for b in self.list_backups()
            ]
        except StoreError as e:
            logger.error(f"Listing backups for export failed: {e}", exc_info=True)
            backups = []

        return {
            'user_data': self.gather_session_data(),
            'backups': backups,
            'storage_health': self.health().to_dict(),
            'export_timestamp': now,
        }

    def debug_info(self) -> Dict:
        try:
            backup_count = len(self.list_backups())
        except StoreError:
            backup_count = None

        return {
            'is_initialized': self.is_initialized,
            'compression_enabled': self.config.compression_enabled,
            'backup_count': backup_count,
            'periodic_active': self._periodic_timer is not None,
            'max_storage_bytes': self.config.max_storage_bytes,
        }
