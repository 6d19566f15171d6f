"""Pure validators shared by both stores and the API layer."""
from typing import Optional

from task_tracker.models.enums import TaskStatus

DEFAULT_ACTOR = "system"

VALID_STATUSES = frozenset(status.value for status in TaskStatus)

# Ids are stored as signed 64-bit integers
MIN_ID = -(2 ** 63)
MAX_ID = 2 ** 63 - 1


def is_valid_task_status(status: Optional[str]) -> bool:
    return status in VALID_STATUSES


def is_storable_id(value: int) -> bool:
    return MIN_ID <= value <= MAX_ID


def normalize_actor(actor: Optional[str]) -> str:
    """Trim the actor name, falling back to the system actor when blank."""
    trimmed = (actor or "").strip()
    return trimmed or DEFAULT_ACTOR


def parse_user_filter(user_id: Optional[str]) -> Optional[int]:
    """
    Parse a user id filter string.

    Returns None when the filter is absent. Raises ValueError unless the
    filter is an optionally signed run of ASCII digits that fits in a
    64-bit id.
    """
    if user_id is None or user_id == "":
        return None

    digits = user_id[1:] if user_id.startswith(("+", "-")) else user_id
    if not (digits.isascii() and digits.isdigit()):
        raise ValueError(f"invalid user id filter: {user_id!r}")

    value = int(user_id)
    if not is_storable_id(value):
        raise ValueError(f"user id filter out of range: {user_id!r}")
    return value
