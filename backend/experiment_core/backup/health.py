"""
Storage health - usage estimation and status thresholds

Status:
- critical: utilization > 90%  -> emergency cleanup
- warning:  utilization > 70%  -> standard cleanup
- healthy:  otherwise
- error:    the store could not be enumerated
"""

import logging
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Dict, Optional

from ..experiment.state import current_session_key, user_data_key
from ..infra.store import DurableStore, entry_size
from ..session.tracker import session_history_key, session_state_key
from .records import parse_backup_key

logger = logging.getLogger(__name__)


class HealthStatus(Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"
    ERROR = "error"


@dataclass(frozen=True)
class StorageUsage:
    total_bytes: int
    experiment_bytes: int
    available_bytes: int


@dataclass(frozen=True)
class StorageHealth:
    """Derived snapshot, recomputed on demand and never persisted"""
    total_bytes: int
    experiment_bytes: int
    available_bytes: int
    utilization_percent: float
    status: HealthStatus

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['status'] = self.status.value
        return data


def owned_keys(user_id: str) -> set:
    """Non-backup keys holding the participant's data"""
    return {
        user_data_key(user_id),
        current_session_key(user_id),
        session_state_key(user_id),
        session_history_key(user_id),
    }


def calculate_usage(store: DurableStore, user_id: Optional[str], max_bytes: int) -> StorageUsage:
    """Sum estimated entry sizes; raises StoreError if the store is unreadable"""
    total = 0
    experiment = 0
    data_keys = owned_keys(user_id) if user_id else set()

    for key in store.keys():
        value = store.get(key) or ''
        size = entry_size(key, value)
        total += size
        if user_id and (key in data_keys or parse_backup_key(key, user_id) is not None):
            experiment += size

    return StorageUsage(total_bytes=total, experiment_bytes=experiment, available_bytes=max_bytes - total)


def assess_health(
    usage: StorageUsage,
    max_bytes: int,
    warning_percent: float = 70.0,
    critical_percent: float = 90.0
) -> StorageHealth:
    utilization = usage.total_bytes / max_bytes * 100 if max_bytes > 0 else 100.0

    if utilization > critical_percent:
        status = HealthStatus.CRITICAL
    elif utilization > warning_percent:
        status = HealthStatus.WARNING
    else:
        status = HealthStatus.HEALTHY

    return StorageHealth(
        total_bytes=usage.total_bytes,
        experiment_bytes=usage.experiment_bytes,
        available_bytes=usage.available_bytes,
        utilization_percent=round(utilization, 2),
        status=status,
    )


def error_health() -> StorageHealth:
    return StorageHealth(
        total_bytes=0,
        experiment_bytes=0,
        available_bytes=0,
        utilization_percent=0.0,
        status=HealthStatus.ERROR,
    )
