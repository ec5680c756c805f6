from datetime import datetime, timezone


class SystemClock:
    """Server time source. Timestamps are naive UTC, matching the DateTime columns."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)
