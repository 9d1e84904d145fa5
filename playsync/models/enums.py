import enum

from sqlalchemy import Enum


class SyncStatus(str, enum.Enum):
    NONE = "none"
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"


class PlaySource(str, enum.Enum):
    LOCAL = "local"
    EXTERNAL = "external"


def enum_column_type(enum_cls) -> Enum:
    # Store the lowercase values as plain strings; portable across SQLite/Postgres.
    return Enum(
        enum_cls,
        native_enum=False,
        values_callable=lambda members: [m.value for m in members],
        length=16,
        validate_strings=True,
    )
