# playsync/models/user.py

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from playsync.database import Base
from playsync.utils.dates import utcnow


class Group(Base):
    __tablename__ = "groups"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=False), default=utcnow, nullable=False)


class User(Base):
    """A member whose plays are synced.

    Only what the sync engine reads lives here; login/auth is handled elsewhere.
    `bgg_password_encrypted` is a Fernet token (see services/bgg/credentials.py).
    """

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    email = Column(String, unique=True, nullable=True)

    bgg_username = Column(String, unique=True, index=True, nullable=True)
    bgg_password_encrypted = Column(Text, nullable=True)
    sync_plays_to_bgg = Column(Boolean, default=False, nullable=False)

    default_group_id = Column(Integer, ForeignKey("groups.id", ondelete="SET NULL"), nullable=True)
    default_group = relationship("Group", lazy="selectin")

    created_at = Column(DateTime(timezone=False), default=utcnow, nullable=False)
