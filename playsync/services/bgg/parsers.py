import html
import logging
import re
import xml.etree.ElementTree as ET
from typing import Optional

from playsync.schemas.bgg import BGGGameData, BGGPlayData, BGGPlayerData
from playsync.services.bgg.errors import MalformedResponse
from playsync.utils.convert import to_bool, to_float, to_int, to_positive_int, to_score, to_text
from playsync.utils.dates import parse_iso_date

logger = logging.getLogger(__name__)

VALID_PLAY_SUBTYPES = ("boardgame", "boardgameexpansion", "boardgamecompilation")

_TAG_RE = re.compile(r"<[^>]+>")


def _value(item: ET.Element, tag: str) -> Optional[str]:
    # <minplayers value="2"/> style, with text content as fallback
    el = item.find(tag)
    if el is None:
        return None
    return el.attrib.get("value") if el.attrib.get("value") not in (None, "") else el.text


def _primary_name(item: ET.Element) -> Optional[str]:
    names = item.findall("name")
    for name_el in names:
        if name_el.attrib.get("type", "") in ("primary", ""):
            return to_text(name_el.attrib.get("value"))
    if names:
        return to_text(names[0].attrib.get("value"))
    return None


def _first_link(item: ET.Element, link_type: str) -> Optional[str]:
    for link in item.findall("link"):
        if link.attrib.get("type") == link_type:
            return to_text(link.attrib.get("value"))
    return None


def _clean_description(raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    text = _TAG_RE.sub("", html.unescape(raw)).strip()
    return text or None


def _rating(item: ET.Element, tag: str) -> Optional[float]:
    el = item.find(f"statistics/ratings/{tag}")
    if el is None:
        return None
    value = to_float(el.attrib.get("value"), strict=True)
    if value is None or value <= 0:
        return None
    return round(value, 3)


def parse_game_item(item: ET.Element) -> BGGGameData:
    """One <item> from /thing. Raises MalformedResponse when the record is unusable."""
    bgg_id = to_text(item.attrib.get("id"))
    if not bgg_id or not bgg_id.isdigit():
        raise MalformedResponse(f"game item without a numeric id: {bgg_id!r}")

    try:
        min_players = to_positive_int(_value(item, "minplayers"), strict=True)
        max_players = to_positive_int(_value(item, "maxplayers"), strict=True)
        return BGGGameData(
            bgg_id=bgg_id,
            name=_primary_name(item) or "Unknown Game",
            description=_clean_description(item.findtext("description")),
            min_players=min_players or 1,
            max_players=max_players or 99,
            playing_time_minutes=to_positive_int(_value(item, "playingtime"), strict=True),
            year_published=to_positive_int(_value(item, "yearpublished"), strict=True),
            publisher=_first_link(item, "boardgamepublisher"),
            designer=_first_link(item, "boardgamedesigner"),
            image_url=to_text(item.findtext("image")),
            thumbnail_url=to_text(item.findtext("thumbnail")),
            bgg_rating=_rating(item, "average"),
            complexity_rating=_rating(item, "averageweight"),
            is_expansion=item.attrib.get("type") == "boardgameexpansion",
        )
    except ValueError as e:
        raise MalformedResponse(f"game {bgg_id}: {e}") from e


# ------------------
# plays
# ------------------


def play_subtype(play: ET.Element) -> Optional[str]:
    el = play.find("item/subtypes/subtype")
    return el.attrib.get("value") if el is not None else None


def validate_play(play: ET.Element) -> bool:
    """Only complete, counted plays of actual board games are imported."""
    if to_int(play.attrib.get("incomplete"), default=1) != 0:
        return False
    if to_int(play.attrib.get("nowinstats"), default=1) != 0:
        return False
    if (to_int(play.attrib.get("quantity"), default=0) or 0) <= 0:
        return False
    if not play.findall("players/player"):
        return False
    return play_subtype(play) in VALID_PLAY_SUBTYPES


def parse_player(player: ET.Element) -> BGGPlayerData:
    return BGGPlayerData(
        username=to_text(player.attrib.get("username")),
        name=to_text(player.attrib.get("name")),
        score=to_score(player.attrib.get("score")),
        is_winner=bool(to_bool(player.attrib.get("win"))),
        is_new_player=bool(to_bool(player.attrib.get("new"))),
        position=to_int(player.attrib.get("startposition")),
    )


def parse_play_element(play: ET.Element) -> BGGPlayData:
    bgg_play_id = to_text(play.attrib.get("id"))
    if not bgg_play_id:
        raise MalformedResponse("play without an id")

    item = play.find("item")
    bgg_game_id = to_text(item.attrib.get("objectid")) if item is not None else None
    if not bgg_game_id:
        raise MalformedResponse(f"play {bgg_play_id} has no game reference")

    played_at = parse_iso_date(play.attrib.get("date"))
    if played_at is None:
        raise MalformedResponse(f"play {bgg_play_id} has no valid date: {play.attrib.get('date')!r}")

    return BGGPlayData(
        bgg_play_id=bgg_play_id,
        bgg_game_id=bgg_game_id,
        played_at=played_at,
        location=to_text(play.attrib.get("location")) or "Unknown",
        comment=to_text(play.findtext("comments")),
        game_length_minutes=to_positive_int(play.attrib.get("length")),
        players=[parse_player(p) for p in play.findall("players/player")],
    )
