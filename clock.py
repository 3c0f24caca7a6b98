from datetime import datetime, timezone


def utcnow():
    """Naive UTC timestamp, matching what the DateTime columns store."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SystemClock:
    def now(self):
        return utcnow()
