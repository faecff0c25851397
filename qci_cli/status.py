"""
Status table for QCI records.

The registry stores a status as the keccak256 hash of its name (bytes32), but
older deployments and some upstream encoders hand the value back as a small
enum integer, a hex string, or even a float produced by coercing the 256-bit
hash into a double. resolve_status() folds all of those back into QCIStatus.
"""

import logging
import math
import re
from enum import IntEnum
from typing import Any, NamedTuple, Optional

from hexbytes import HexBytes

log = logging.getLogger(__name__)


class QCIStatus(IntEnum):
    DRAFT = 0
    READY_FOR_SNAPSHOT = 1
    POSTED_TO_SNAPSHOT = 2
    ARCHIVED = 3


class StatusInfo(NamedTuple):
    name: str
    hash: str
    display_name: str


STATUS_CONFIG = {
    QCIStatus.DRAFT: StatusInfo(
        "Draft",
        "0xbffca6d7a13b72cfdfdf4a97d0ffb89fac6c686a62ced4a04137794363a3e382",
        "Draft",
    ),
    QCIStatus.READY_FOR_SNAPSHOT: StatusInfo(
        "Ready for Snapshot",
        "0x7070e08f253402b7697ed999df8646627439945a954330fcee1b731dac30d7fb",
        "Ready for Snapshot",
    ),
    QCIStatus.POSTED_TO_SNAPSHOT: StatusInfo(
        "Posted to Snapshot",
        "0x4ea8e9bba2b921001f72db15ceea1abf86759499f1e2f63f81995578937fc34c",
        "Posted to Snapshot",
    ),
    QCIStatus.ARCHIVED: StatusInfo(
        "Archived",
        "0x0d8595aca39f218edf0e157d52bd6f25c54fd84dd4194a1ae097f2f0020dcb90",
        "Archived",
    ),
}

# Statuses the registry indexes with getQCIsByStatus
ACTIVE_STATUSES = (
    QCIStatus.DRAFT,
    QCIStatus.READY_FOR_SNAPSHOT,
    QCIStatus.POSTED_TO_SNAPSHOT,
)

# Double renderings of status hashes seen from the legacy API encoder.
LEGACY_FLOAT_STATUSES = {
    "3.557884566192312e+76": QCIStatus.POSTED_TO_SNAPSHOT,
    "8.683815104298986e+76": QCIStatus.DRAFT,
    "5.069118969180783e+76": QCIStatus.READY_FOR_SNAPSHOT,
}

# Records migrated from the old registry at or above this number started out as drafts.
LEGACY_DRAFT_THRESHOLD = 246

_HASH_TO_STATUS = {info.hash.lower(): status for status, info in STATUS_CONFIG.items()}
_FLOAT_TO_STATUS = {float(int(info.hash, 16)): status for status, info in STATUS_CONFIG.items()}
_SCIENTIFIC_RE = re.compile(r"^[+-]?\d+(\.\d+)?[eE][+-]?\d+$")


def _compact_name(name: str) -> str:
    return "".join(word[:1].upper() + word[1:] for word in name.split())


_NAME_TO_STATUS = {}
for _status, _info in STATUS_CONFIG.items():
    _NAME_TO_STATUS[_info.name] = _status
    _NAME_TO_STATUS[_status.name] = _status
    _NAME_TO_STATUS[_compact_name(_info.name)] = _status


def _hash_key(value: Any) -> Optional[str]:
    if isinstance(value, (bytes, bytearray)):
        if len(value) != 32:
            return None
        return "0x" + bytes(value).hex()
    if isinstance(value, int):
        return "0x" + format(value, "064x")
    if isinstance(value, str):
        text = value.strip().lower()
        if text.startswith("0x"):
            text = text[2:]
        if len(text) != 64 or not re.fullmatch(r"[0-9a-f]+", text):
            return None
        return "0x" + text
    return None


def status_by_hash(value: Any) -> Optional[QCIStatus]:
    """Look up a status by its bytes32 id (hex str, bytes or int)."""
    key = _hash_key(value)
    if key is None:
        return None
    return _HASH_TO_STATUS.get(key)


def status_by_name(name: str) -> Optional[QCIStatus]:
    """Exact lookup by name: "Ready for Snapshot", READY_FOR_SNAPSHOT or the API's ReadyForSnapshot."""
    if not isinstance(name, str):
        return None
    return _NAME_TO_STATUS.get(name)


def status_name(status: Any) -> str:
    try:
        return STATUS_CONFIG[QCIStatus(status)].name
    except (ValueError, KeyError):
        return "Unknown"


def status_hash(status: Any) -> str:
    try:
        return STATUS_CONFIG[QCIStatus(status)].hash
    except (ValueError, KeyError):
        return "0x0"


def status_display_name(status: Any) -> str:
    try:
        return STATUS_CONFIG[QCIStatus(status)].display_name
    except (ValueError, KeyError):
        return "Unknown"


def _status_from_float(value: float, qci_number: Optional[int]) -> QCIStatus:
    status = _FLOAT_TO_STATUS.get(value)
    if status is not None:
        return status
    for text, legacy_status in LEGACY_FLOAT_STATUSES.items():
        if math.isclose(value, float(text), rel_tol=1e-15):
            return legacy_status
    if qci_number is not None:
        fallback = QCIStatus.DRAFT if qci_number >= LEGACY_DRAFT_THRESHOLD else QCIStatus.POSTED_TO_SNAPSHOT
        log.debug("Unmatched float status %r for QCI %s, using %s", value, qci_number, fallback.name)
        return fallback
    log.warning("Unmatched float status %r, defaulting to Draft", value)
    return QCIStatus.DRAFT


def resolve_status(value: Any, qci_number: Optional[int] = None) -> QCIStatus:
    """Convert any status representation the registry or API returns into QCIStatus.

    Args:
        value: A QCIStatus, an enum integer, a bytes32 hash (bytes, hex string or
            256-bit integer), a status name, or a float/scientific notation string.
        qci_number: Record number, used to classify legacy float values that
            match no known hash.

    Returns:
        The matching QCIStatus. Unrecognised values resolve to DRAFT.
    """
    if isinstance(value, QCIStatus):
        return value
    if isinstance(value, bool):
        log.warning("Unexpected boolean status %r, defaulting to Draft", value)
        return QCIStatus.DRAFT
    if isinstance(value, int):
        if 0 <= value <= QCIStatus.ARCHIVED:
            return QCIStatus(value)
        status = status_by_hash(value)
        if status is None:
            log.warning("Unknown status hash %s, defaulting to Draft", hex(value))
            return QCIStatus.DRAFT
        return status
    if isinstance(value, float):
        if value.is_integer() and 0 <= value <= QCIStatus.ARCHIVED:
            return QCIStatus(int(value))
        return _status_from_float(value, qci_number)
    if isinstance(value, (bytes, bytearray, HexBytes)):
        status = status_by_hash(value)
        if status is None:
            log.warning("Unknown status bytes %s, defaulting to Draft", HexBytes(value).hex())
            return QCIStatus.DRAFT
        return status
    if isinstance(value, str):
        text = value.strip()
        if text.lower().startswith("0x"):
            status = status_by_hash(text)
            if status is None:
                log.warning("Unknown status hash %s, defaulting to Draft", text)
                return QCIStatus.DRAFT
            return status
        if text.isdigit():
            return resolve_status(int(text), qci_number)
        if _SCIENTIFIC_RE.match(text):
            return _status_from_float(float(text), qci_number)
        status = status_by_name(text)
        if status is not None:
            return status
    log.warning("Unrecognised status value %r, defaulting to Draft", value)
    return QCIStatus.DRAFT
