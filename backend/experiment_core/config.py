"""
Configuration - timing thresholds, backup policy and host settings

All durations are in seconds; stored timestamps elsewhere are milliseconds.

Usage:
    config = ExperimentConfig()                       # defaults
    config = ExperimentConfig.from_env()              # EXPERIMENT_* overrides
    config.tracker.idle_threshold = 120.0
"""

import os
from dataclasses import dataclass, field
from typing import FrozenSet, List

TOTAL_SESSIONS = 9


@dataclass
class TrackerConfig:
    """Session lifecycle timing"""
    idle_threshold: float = 5 * 60.0          # 5 minutes
    max_session_duration: float = 30 * 60.0   # 30 minutes
    check_interval: float = 30.0
    resume_window: float = 60 * 60.0          # saved state older than 1 hour is stale


@dataclass
class BackupConfig:
    """Backup triggers, storage capacity and eviction policy"""
    periodic_interval: float = 2 * 60.0
    debounce_delay: float = 5.0
    max_storage_bytes: int = 50 * 1024 * 1024  # 50MB
    warning_percent: float = 70.0
    critical_percent: float = 90.0
    max_backup_age: float = 7 * 24 * 60 * 60.0
    emergency_max_age: float = 24 * 60 * 60.0
    max_backups: int = 50
    event_recent_count: int = 10
    live_recent_count: int = 20
    emergency_recent_count: int = 5
    compression_enabled: bool = True
    event_backup_types: FrozenSet[str] = frozenset({'death'})
    debounced_event_types: FrozenSet[str] = frozenset({'awardPoints'})


@dataclass
class ExperimentConfig:
    """
    Complete configuration for an experiment coordinator instance.

    Host settings (store_path, cors_origins) are only used by backend/main.py.
    """
    tracker: TrackerConfig = field(default_factory=TrackerConfig)
    backup: BackupConfig = field(default_factory=BackupConfig)
    total_sessions: int = TOTAL_SESSIONS
    store_path: str = './data/store.json'
    cors_origins: List[str] = field(default_factory=lambda: [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ])

    @classmethod
    def from_env(cls, environ=None) -> 'ExperimentConfig':
        """
        Build a config with EXPERIMENT_* environment overrides.

        Recognised variables:
            EXPERIMENT_STORE_PATH, EXPERIMENT_MAX_STORAGE_BYTES,
            EXPERIMENT_IDLE_THRESHOLD, EXPERIMENT_MAX_SESSION_DURATION,
            EXPERIMENT_PERIODIC_INTERVAL, EXPERIMENT_CORS_ORIGINS (comma separated)
        """
        env = os.environ if environ is None else environ
        config = cls()

        if env.get('EXPERIMENT_STORE_PATH'):
            config.store_path = env['EXPERIMENT_STORE_PATH']
        if env.get('EXPERIMENT_MAX_STORAGE_BYTES'):
            config.backup.max_storage_bytes = int(env['EXPERIMENT_MAX_STORAGE_BYTES'])
        if env.get('EXPERIMENT_IDLE_THRESHOLD'):
            config.tracker.idle_threshold = float(env['EXPERIMENT_IDLE_THRESHOLD'])
        if env.get('EXPERIMENT_MAX_SESSION_DURATION'):
            config.tracker.max_session_duration = float(env['EXPERIMENT_MAX_SESSION_DURATION'])
        if env.get('EXPERIMENT_PERIODIC_INTERVAL'):
            config.backup.periodic_interval = float(env['EXPERIMENT_PERIODIC_INTERVAL'])
        if env.get('EXPERIMENT_CORS_ORIGINS'):
            config.cors_origins = [o.strip() for o in env['EXPERIMENT_CORS_ORIGINS'].split(',') if o.strip()]

        return config
