# playsync/models/board_game.py

from sqlalchemy import Boolean, Column, DateTime, Float, Integer, String, Text

from playsync.database import Base
from playsync.models.enums import SyncStatus, enum_column_type
from playsync.utils.dates import utcnow


class BoardGame(Base):
    """A catalog entry mirrored from BGG's /thing endpoint.

    Notes:
    - `bgg_id` is BGG's object id, stored as a string and unique when present.
    - Rows are created by catalog sync or manually and only ever mutated by catalog sync.
    - Expansions live in the same table, flagged with `is_expansion`.
    """

    __tablename__ = "board_games"

    id = Column(Integer, primary_key=True, index=True)
    bgg_id = Column(String, unique=True, index=True, nullable=True)

    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    min_players = Column(Integer, nullable=True)
    max_players = Column(Integer, nullable=True)
    playing_time_minutes = Column(Integer, nullable=True)
    year_published = Column(Integer, nullable=True)
    publisher = Column(String, nullable=True)
    designer = Column(String, nullable=True)
    bgg_rating = Column(Float, nullable=True)
    complexity_rating = Column(Float, nullable=True)
    image_url = Column(String, nullable=True)
    thumbnail_url = Column(String, nullable=True)
    is_expansion = Column(Boolean, default=False, nullable=False)

    # sync bookkeeping
    bgg_synced_at = Column(DateTime(timezone=False), nullable=True)
    bgg_sync_status = Column(enum_column_type(SyncStatus), default=SyncStatus.NONE, nullable=False)
    bgg_sync_error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=False), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=False), default=utcnow, onupdate=utcnow, nullable=False)
