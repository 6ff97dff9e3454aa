"""
Backup records - structured metadata and the store key codec

Key format: <kind>_backup_<userId>[_<timestamp>]
- session, event: timestamp suffix (one entry per write, evicted later)
- periodic, emergency: no suffix (single slot per user, overwritten)

Only backup_key() and parse_backup_key() know this format; everything
else handles BackupRecord.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

_LABEL = re.compile(r'[a-z]+')
# Millisecond epoch timestamps are at least 13 digits wide
_TIMESTAMP_SUFFIX = re.compile(r'_(\d{13,})')


class BackupKind(Enum):
    SESSION = "session"
    PERIODIC = "periodic"
    EVENT = "event"
    EMERGENCY = "emergency"
    UNKNOWN = "unknown"

    @property
    def single_slot(self) -> bool:
        """Kinds that overwrite one stable key per user"""
        return self in (BackupKind.PERIODIC, BackupKind.EMERGENCY)


@dataclass(frozen=True)
class BackupRecord:
    """
    Metadata of one stored backup.

    payload is only populated when the record was loaded or just written.
    """
    key: str
    kind: BackupKind
    timestamp: int      # ms, 0 when unknown
    payload: Any = None

    def age(self, now_ms: int) -> int:
        return now_ms - self.timestamp

    def to_dict(self, now_ms: Optional[int] = None) -> dict:
        data = {'key': self.key, 'kind': self.kind.value, 'timestamp': self.timestamp}
        if now_ms is not None:
            data['age'] = self.age(now_ms)
        return data


def backup_key(kind: BackupKind, user_id: str, timestamp: int) -> str:
    if kind.single_slot:
        return f"{kind.value}_backup_{user_id}"
    return f"{kind.value}_backup_{user_id}_{timestamp}"


def backup_marker(user_id: str) -> str:
    return f"backup_{user_id}"


def parse_backup_key(key: str, user_id: str) -> Optional[BackupRecord]:
    """
    Parse a store key into BackupRecord metadata.

    The key must be exactly <label>_backup_<user_id>, optionally followed by
    a millisecond timestamp. Keys of other participants whose id merely
    starts with user_id (e.g. bob_7 for bob) do not match.

    Returns:
        BackupRecord (kind UNKNOWN for unrecognized labels), or None when
        the key is not a backup of user_id
    """
    marker = f"_{backup_marker(user_id)}"
    label, found, rest = key.partition(marker)
    if not found or not _LABEL.fullmatch(label):
        return None

    if rest:
        match = _TIMESTAMP_SUFFIX.fullmatch(rest)
        if match is None:
            return None
        timestamp = int(match.group(1))
    else:
        timestamp = 0

    try:
        kind = BackupKind(label)
    except ValueError:
        kind = BackupKind.UNKNOWN

    if kind.single_slot and rest:
        # <kind>_backup_<user_id>_<n> is another participant's single slot
        return None

    return BackupRecord(key=key, kind=kind, timestamp=timestamp)
