# playsync/schemas/plays.py
from datetime import date, datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from playsync.models.enums import PlaySource, SyncStatus
from playsync.schemas.identity import ParticipantIdentity

MAX_PLAYERS_PER_PLAY = 30


class BGGCredential(BaseModel):
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)


class PlayerCreate(BaseModel):
    identity: ParticipantIdentity
    score: Optional[float] = None
    is_winner: bool = False
    position: Optional[int] = None


class PlayCreate(BaseModel):
    board_game_id: int
    played_at: date
    location: str = "Unknown"
    comment: Optional[str] = None
    game_length_minutes: Optional[int] = Field(default=None, ge=1)
    # None -> creator's default group
    group_id: Optional[int] = None
    personal: bool = False
    expansion_ids: List[int] = Field(default_factory=list)
    players: List[PlayerCreate] = Field(min_length=1, max_length=MAX_PLAYERS_PER_PLAY)
    sync_to_bgg: bool = False
    bgg_credential: Optional[BGGCredential] = None


class PlayUpdate(BaseModel):
    played_at: Optional[date] = None
    location: Optional[str] = None
    comment: Optional[str] = None
    game_length_minutes: Optional[int] = Field(default=None, ge=1)
    group_id: Optional[int] = None
    expansion_ids: Optional[List[int]] = None
    players: Optional[List[PlayerCreate]] = Field(default=None, min_length=1, max_length=MAX_PLAYERS_PER_PLAY)


# ------------------
# READ MODELS
# ------------------


class PlayerRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: Optional[int] = None
    bgg_username: Optional[str] = None
    guest_name: Optional[str] = None
    score: Optional[float] = None
    is_winner: bool
    is_new_player: bool
    position: Optional[int] = None


class PlayRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    board_game_id: int
    group_id: Optional[int] = None
    created_by_user_id: int
    played_at: date
    location: str
    comment: Optional[str] = None
    game_length_minutes: Optional[int] = None
    source: PlaySource
    bgg_play_id: Optional[str] = None
    is_excluded: bool
    leading_play_id: Optional[int] = None
    exclusion_reason: Optional[str] = None
    participants: List[PlayerRead] = Field(default_factory=list)
    created_at: datetime


class SyncStatusRead(BaseModel):
    play_id: int
    inbound_status: Optional[SyncStatus] = None
    inbound_synced_at: Optional[datetime] = None
    inbound_error: Optional[str] = None
    outbound_requested: bool
    outbound_status: SyncStatus
    outbound_submitted_at: Optional[datetime] = None
    outbound_error: Optional[str] = None
    bgg_play_id: Optional[str] = None


class CatalogSyncStatusRead(BaseModel):
    board_game_id: int
    bgg_id: Optional[str] = None
    status: SyncStatus
    synced_at: Optional[datetime] = None
    error: Optional[str] = None


class PlayStats(BaseModel):
    plays: int
    wins: int
    games: int
    by_game: Dict[int, int] = Field(default_factory=dict)
