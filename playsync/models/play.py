# playsync/models/play.py

from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
)
from sqlalchemy.orm import relationship

from playsync.database import Base
from playsync.models.board_game import BoardGame
from playsync.models.enums import PlaySource, SyncStatus, enum_column_type
from playsync.models.user import User
from playsync.schemas.identity import ExternalUsername, GuestName, ParticipantIdentity, UserIdentity
from playsync.utils.dates import utcnow

board_game_play_expansions = Table(
    "board_game_play_expansions",
    Base.metadata,
    Column("board_game_play_id", Integer, ForeignKey("board_game_plays.id", ondelete="CASCADE"), primary_key=True),
    Column("board_game_id", Integer, ForeignKey("board_games.id", ondelete="CASCADE"), primary_key=True),
)


class BoardGamePlayPlayer(Base):
    """One seat at the table. Identity is exactly one of user / BGG username / guest name."""

    __tablename__ = "board_game_play_players"
    __table_args__ = (
        CheckConstraint(
            "(CASE WHEN user_id IS NULL THEN 0 ELSE 1 END)"
            " + (CASE WHEN bgg_username IS NULL THEN 0 ELSE 1 END)"
            " + (CASE WHEN guest_name IS NULL THEN 0 ELSE 1 END) = 1",
            name="ck_player_exactly_one_identity",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    board_game_play_id = Column(
        Integer, ForeignKey("board_game_plays.id", ondelete="CASCADE"), index=True, nullable=False
    )

    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=True)
    bgg_username = Column(String, index=True, nullable=True)
    guest_name = Column(String, nullable=True)

    score = Column(Float, nullable=True)
    is_winner = Column(Boolean, default=False, nullable=False)
    is_new_player = Column(Boolean, default=False, nullable=False)
    position = Column(Integer, nullable=True)

    play = relationship("BoardGamePlay", back_populates="participants")
    user = relationship(User, lazy="selectin")

    @classmethod
    def for_identity(cls, identity: ParticipantIdentity, **attrs) -> "BoardGamePlayPlayer":
        player = cls(**attrs)
        player.identity = identity
        return player

    @property
    def identity(self) -> ParticipantIdentity:
        if self.user_id is not None:
            return UserIdentity(user_id=self.user_id)
        if self.bgg_username is not None:
            return ExternalUsername(username=self.bgg_username)
        return GuestName(name=self.guest_name)

    @identity.setter
    def identity(self, identity: ParticipantIdentity) -> None:
        self.user_id = identity.user_id if isinstance(identity, UserIdentity) else None
        self.bgg_username = identity.username if isinstance(identity, ExternalUsername) else None
        self.guest_name = identity.name if isinstance(identity, GuestName) else None

    def snapshot(self) -> tuple:
        """Everything an inbound sync can change on a seat, for change detection."""
        return (self.identity, self.score, bool(self.is_winner), bool(self.is_new_player), self.position)


class BoardGamePlay(Base):
    """A logged play session.

    Dedup bookkeeping: a leading play has `is_excluded = False` and no
    `leading_play_id`; an excluded play points at a leading play (depth 1).
    The pointer is a weak back-reference: deleting a leading play nulls it
    at the database level instead of cascading.
    """

    __tablename__ = "board_game_plays"
    __table_args__ = (
        Index("ix_plays_grouping_key", "board_game_id", "played_at", "group_id", "is_excluded"),
    )

    id = Column(Integer, primary_key=True, index=True)

    board_game_id = Column(Integer, ForeignKey("board_games.id", ondelete="CASCADE"), index=True, nullable=False)
    group_id = Column(Integer, ForeignKey("groups.id", ondelete="SET NULL"), index=True, nullable=True)
    created_by_user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)

    played_at = Column(Date, index=True, nullable=False)
    location = Column(String, nullable=False, default="Unknown")
    comment = Column(Text, nullable=True)
    game_length_minutes = Column(Integer, nullable=True)

    source = Column(enum_column_type(PlaySource), default=PlaySource.LOCAL, nullable=False, index=True)
    bgg_play_id = Column(String, unique=True, index=True, nullable=True)

    # inbound sync (BGG -> us)
    bgg_synced_at = Column(DateTime(timezone=False), nullable=True)
    bgg_sync_status = Column(enum_column_type(SyncStatus), nullable=True)
    bgg_sync_error = Column(Text, nullable=True)

    # outbound sync (us -> BGG)
    request_outbound_sync = Column(Boolean, default=False, nullable=False, index=True)
    submitted_at = Column(DateTime(timezone=False), nullable=True)
    submit_status = Column(enum_column_type(SyncStatus), default=SyncStatus.NONE, nullable=False)
    submit_error = Column(Text, nullable=True)
    outbound_bgg_username = Column(String, nullable=True)
    outbound_bgg_password_encrypted = Column(Text, nullable=True)
    # bumped on every change that needs resubmitting; a submission only marks the revision it sent as synced
    outbound_revision = Column(Integer, default=0, nullable=False)

    # deduplication
    is_excluded = Column(Boolean, default=False, nullable=False, index=True)
    leading_play_id = Column(
        Integer, ForeignKey("board_game_plays.id", ondelete="SET NULL"), index=True, nullable=True
    )
    excluded_at = Column(DateTime(timezone=False), nullable=True)
    exclusion_reason = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=False), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=False), default=utcnow, onupdate=utcnow, nullable=False)

    board_game = relationship(BoardGame, lazy="selectin")
    creator = relationship(User, lazy="selectin")
    participants = relationship(
        "BoardGamePlayPlayer",
        back_populates="play",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="selectin",
        order_by="BoardGamePlayPlayer.id",
    )
    expansions = relationship(BoardGame, secondary=board_game_play_expansions, lazy="selectin")

    @property
    def dedup_key(self) -> tuple[int, object, Optional[int]]:
        return (self.board_game_id, self.played_at, self.group_id)

    @property
    def is_leading(self) -> bool:
        return not self.is_excluded

    def mark_leading(self) -> None:
        self.is_excluded = False
        self.leading_play_id = None
        self.excluded_at = None
        self.exclusion_reason = None

    def mark_excluded(self, leading: "BoardGamePlay") -> None:
        if self.leading_play_id != leading.id or not self.is_excluded:
            self.excluded_at = utcnow()
        self.is_excluded = True
        self.leading_play_id = leading.id
        self.exclusion_reason = (
            f"Duplicate of play #{leading.id} (same board game, date, group and participants)"
        )
