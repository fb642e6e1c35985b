from __future__ import annotations

import uuid
from datetime import datetime, timezone


class Clock:
    """Wall-clock time and identifier source shared by every component."""

    def now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    def new_id(self) -> str:
        return str(uuid.uuid4())


def ensure_utc(value: datetime) -> datetime:
    """Normalize naive timestamps (older records) to UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


system_clock = Clock()
