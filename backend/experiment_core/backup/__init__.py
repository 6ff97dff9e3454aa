"""
Backup & Recovery - snapshot encoding, storage health, eviction and restore
"""
from . import codec
from .engine import BackupRecoveryEngine
from .health import HealthStatus, StorageHealth, assess_health, calculate_usage
from .records import BackupKind, BackupRecord, backup_key, parse_backup_key

__all__ = [
    'BackupRecoveryEngine', 'BackupKind', 'BackupRecord', 'backup_key', 'parse_backup_key',
    'HealthStatus', 'StorageHealth', 'assess_health', 'calculate_usage', 'codec',
]
