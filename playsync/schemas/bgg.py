# playsync/schemas/bgg.py
from datetime import date
from typing import List, Optional

from pydantic import BaseModel, Field

from playsync.schemas.identity import ParticipantIdentity

# ------------------
# CATALOG (/thing)
# ------------------


class BGGGameData(BaseModel):
    bgg_id: str
    name: str = "Unknown Game"
    description: Optional[str] = None
    min_players: int = 1
    max_players: int = 99
    playing_time_minutes: Optional[int] = None
    year_published: Optional[int] = None
    publisher: Optional[str] = None
    designer: Optional[str] = None
    image_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    bgg_rating: Optional[float] = None
    complexity_rating: Optional[float] = None
    is_expansion: bool = False


# ------------------
# PLAYS (/plays)
# ------------------


class BGGPlayerData(BaseModel):
    # username as sent by BGG; mapped to a local user later
    username: Optional[str] = None
    name: Optional[str] = None
    score: Optional[float] = None
    is_winner: bool = False
    is_new_player: bool = False
    position: Optional[int] = None


class BGGPlayData(BaseModel):
    bgg_play_id: str
    bgg_game_id: str
    played_at: date
    location: str = "Unknown"
    comment: Optional[str] = None
    game_length_minutes: Optional[int] = None
    players: List[BGGPlayerData] = Field(default_factory=list)


class MappedPlayer(BaseModel):
    """A BGG player after its username was matched against local users."""

    identity: ParticipantIdentity
    score: Optional[float] = None
    is_winner: bool = False
    is_new_player: bool = False
    position: Optional[int] = None
