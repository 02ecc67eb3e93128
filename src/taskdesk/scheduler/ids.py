"""
Deterministic document ids for scheduler writes.

Each job derives the id of what it writes from its inputs, so a rerun
collides with the earlier write (409) instead of duplicating it.
"""

import re
from datetime import date, datetime, timezone

from taskdesk.db.errors import BackendError

MAX_DOCUMENT_ID_LENGTH = 36

_NON_ALPHANUMERIC = re.compile(r"[^a-zA-Z0-9]")
_DUPLICATE_MESSAGE = re.compile(r"already exists|duplicate", re.IGNORECASE)


def normalize_id_segment(value: str, max_length: int) -> str:
    """Alphanumeric, lowercased, truncated or right-padded with '0' to max_length."""
    cleaned = _NON_ALPHANUMERIC.sub("", value).lower()
    return cleaned[:max_length].ljust(max_length, "0")


def is_duplicate_insert_error(error: BackendError | None) -> bool:
    if error is None:
        return False
    if error.status == 409:
        return True
    return bool(_DUPLICATE_MESSAGE.search(error.message or ""))


def materialized_task_id(recurring_task_id: str, scheduled_at: datetime) -> str:
    moment = scheduled_at.astimezone(timezone.utc)
    segment = normalize_id_segment(recurring_task_id, 20)
    return f"rt_{segment}_{moment:%Y%m%d%H%M}"[:MAX_DOCUMENT_ID_LENGTH]


def digest_notification_id(user_id: str, day: date) -> str:
    return f"digest_{normalize_id_segment(user_id, 20)}_{day:%Y%m%d}"[:MAX_DOCUMENT_ID_LENGTH]


def escalation_notification_id(approval_id: str, user_id: str) -> str:
    approval_part = normalize_id_segment(approval_id, 14)
    user_part = normalize_id_segment(user_id, 14)
    return f"esc_{approval_part}_{user_part}"[:MAX_DOCUMENT_ID_LENGTH]
