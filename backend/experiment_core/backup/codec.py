"""
Snapshot codec - compact JSON + base64

encode():
1. Serialize to compact JSON (structural whitespace removed; whitespace
   inside string values is preserved so decode(encode(x)) == x)
2. Base64-encode to an ASCII-safe blob
On any failure it degrades to plain JSON; it never raises.

decode():
1. Try base64 -> JSON
2. Fall back to the blob as plain JSON
3. Return None (and log) when neither works
"""

import base64
import binascii
import dataclasses
import json
import logging
from datetime import date, datetime
from enum import Enum
from typing import Any, Optional

logger = logging.getLogger(__name__)


def _json_default(value: Any):
    """Serializer for the non-JSON types snapshots may carry"""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=repr)
    if hasattr(value, 'tolist'):
        # numpy arrays and scalars
        return value.tolist()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def encode(data: Any, compress: bool = True) -> Optional[str]:
    """
    Encode a snapshot for storage.

    Returns:
        Base64 blob, plain JSON on fallback, or None if the data cannot be
        serialized at all (e.g. cyclic or too deeply nested)
    """
    if not compress:
        return _plain_json(data)

    try:
        text = json.dumps(data, separators=(',', ':'), ensure_ascii=False, default=_json_default)
        return base64.b64encode(text.encode('utf-8')).decode('ascii')
    except (TypeError, ValueError, OverflowError, RecursionError) as e:
        logger.warning(f"Compression failed, using raw JSON: {e}")
        return _plain_json(data)


def _plain_json(data: Any) -> Optional[str]:
    try:
        return json.dumps(data, default=str)
    except (TypeError, ValueError, OverflowError, RecursionError) as e:
        logger.error(f"Snapshot serialization failed: {e}")
        return None


def decode(blob: Optional[str]) -> Any:
    """
    Decode a stored blob.

    Returns:
        The snapshot, or None when the blob is neither base64 JSON nor JSON
    """
    if blob is None:
        return None

    try:
        raw = base64.b64decode(blob, validate=True)
        return json.loads(raw.decode('utf-8'))
    except (binascii.Error, UnicodeDecodeError, ValueError):
        pass

    try:
        return json.loads(blob)
    except ValueError as e:
        logger.error(f"Decode failed: {e}")
        return None
