from datetime import datetime, time, timezone
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the convention for every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SerializerMixin:
    """Column-to-dict conversion for JSON responses."""

    def to_dict(self):
        result = {}
        for column in self.__table__.columns:
            value = getattr(self, column.name)
            if isinstance(value, (datetime, time)):
                value = value.isoformat()
            result[column.name] = value
        return result
