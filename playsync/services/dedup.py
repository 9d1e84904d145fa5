import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import date
from typing import Dict, Hashable, Iterable, List, Optional, Sequence, Set, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from playsync.models.play import BoardGamePlay
from playsync.models.user import User
from playsync.schemas.identity import ExternalUsername, IdentityKey, identity_key
from playsync.services.bgg.errors import DeduplicationInvariantError
from playsync.utils.logging import log_error

logger = logging.getLogger(__name__)

GroupingKey = Tuple[int, date, Optional[int]]
IdentitySet = Tuple[IdentityKey, ...]
# leading play id -> creators of the plays in its cluster
Clusters = Dict[int, Set[int]]


class KeyedLock:
    """One asyncio.Lock per key; entries are dropped once nobody holds or waits on them."""

    def __init__(self) -> None:
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._users: Dict[Hashable, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, key: Hashable):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                self._locks.pop(key, None)

    @asynccontextmanager
    async def hold_many(self, keys: Iterable[Hashable]):
        # fixed global order so two callers never wait on each other crosswise
        ordered = sorted(set(keys), key=repr)
        if not ordered:
            yield
            return
        async with self.hold(ordered[0]):
            async with self.hold_many(ordered[1:]):
                yield

    def __len__(self) -> int:
        return len(self._locks)


_grouping_locks = KeyedLock()


def _tie_break(play: BoardGamePlay):
    return (play.created_at, play.id)


class DeduplicationResolver:
    """
    Maintains the leading/excluded graph between plays describing the same event.

    Two plays are duplicates when they share (board game, date, group), their
    participant identity multisets are equal and they were logged by different
    users; one user logging the same table twice played twice. A cluster never
    holds two plays from the same creator. Plays without a group are personal
    and never deduplicated. Every public entry point serializes on the
    grouping key, re-homes excluded plays whose leading play was deleted
    behind its back, verifies the key's graph and commits before the key is
    released.
    """

    def __init__(self, locks: Optional[KeyedLock] = None) -> None:
        self._locks = locks or _grouping_locks

    # ------------------
    # public API
    # ------------------

    async def resolve(self, session: AsyncSession, play: BoardGamePlay) -> None:
        async with self._locks.hold(play.dedup_key):
            await session.flush()
            await self._repair_orphans(session, play.dedup_key, exclude_id=play.id)
            await self._resolve_locked(session, play)
            await self.verify_key(session, play.dedup_key)
            await session.commit()

    async def reresolve(self, session: AsyncSession, play: BoardGamePlay, previous_key: GroupingKey) -> None:
        """Edit path: detach from the old position in the graph, then resolve again."""
        async with self._locks.hold_many([previous_key, play.dedup_key]):
            await session.flush()
            for key in dict.fromkeys([previous_key, play.dedup_key]):
                await self._repair_orphans(session, key, exclude_id=play.id)
            await self._detach(session, play, previous_key)
            await session.flush()
            await self._resolve_locked(session, play)
            await self.verify_key(session, previous_key)
            await self.verify_key(session, play.dedup_key)
            await session.commit()

    async def remove(self, session: AsyncSession, play: BoardGamePlay) -> None:
        """Delete a play; followers of a leading play are promoted, never cascaded."""
        key = play.dedup_key
        async with self._locks.hold(key):
            await self._repair_orphans(session, key, exclude_id=play.id)
            await self._detach(session, play, key)
            await session.delete(play)
            await session.flush()
            await self.verify_key(session, key)
            await session.commit()

    async def rebuild(
        self,
        session: AsyncSession,
        group_id: Optional[int] = None,
        board_game_id: Optional[int] = None,
        played_on: Optional[date] = None,
    ) -> Dict[str, int]:
        """Recompute the graph from scratch for every grouping key in scope."""
        stmt = select(BoardGamePlay.board_game_id, BoardGamePlay.played_at, BoardGamePlay.group_id).distinct()
        if group_id is not None:
            stmt = stmt.where(BoardGamePlay.group_id == group_id)
        if board_game_id is not None:
            stmt = stmt.where(BoardGamePlay.board_game_id == board_game_id)
        if played_on is not None:
            stmt = stmt.where(BoardGamePlay.played_at == played_on)

        keys: List[GroupingKey] = [tuple(row) for row in (await session.execute(stmt)).all()]
        summary = {"keys": 0, "plays": 0, "excluded": 0}

        for key in keys:
            async with self._locks.hold(key):
                plays = await self._plays_for_key(session, key)
                excluded = await self._recompute(session, key, plays)
                await self.verify_key(session, key)
                await session.commit()
            summary["keys"] += 1
            summary["plays"] += len(plays)
            summary["excluded"] += excluded

        logger.info("Dedup rebuild: %s", summary)
        return summary

    async def verify_key(self, session: AsyncSession, key: GroupingKey) -> None:
        """Raise DeduplicationInvariantError if the graph for `key` is not well-formed."""
        rows = (
            await session.execute(
                select(
                    BoardGamePlay.id,
                    BoardGamePlay.is_excluded,
                    BoardGamePlay.leading_play_id,
                    BoardGamePlay.created_by_user_id,
                ).where(*self._key_filter(key))
            )
        ).all()
        state = {row.id: (row.is_excluded, row.leading_play_id) for row in rows}
        creators = {row.id: row.created_by_user_id for row in rows}
        clusters: Clusters = {}

        problems: List[str] = []
        for play_id, (is_excluded, leading_id) in state.items():
            if not is_excluded:
                if leading_id is not None:
                    problems.append(f"leading play #{play_id} points at #{leading_id}")
                continue
            if key[2] is None:
                problems.append(f"personal play #{play_id} is excluded")
            if leading_id is None:
                problems.append(f"excluded play #{play_id} has no leading play")
            elif leading_id not in state:
                problems.append(f"excluded play #{play_id} points outside its grouping key (#{leading_id})")
            elif state[leading_id][0]:
                problems.append(f"excluded play #{play_id} points at excluded play #{leading_id}")
            else:
                cluster = clusters.setdefault(leading_id, {creators[leading_id]})
                if creators[play_id] in cluster:
                    problems.append(f"excluded play #{play_id} shares a creator with the cluster of #{leading_id}")
                cluster.add(creators[play_id])

        if problems:
            message = f"dedup graph broken for key {key}: " + "; ".join(problems)
            log_error(message)
            raise DeduplicationInvariantError(message)

    # ------------------
    # internals (caller holds the key lock)
    # ------------------

    @staticmethod
    def _key_filter(key: GroupingKey):
        board_game_id, played_at, group_id = key
        group_clause = BoardGamePlay.group_id.is_(None) if group_id is None else BoardGamePlay.group_id == group_id
        return (BoardGamePlay.board_game_id == board_game_id, BoardGamePlay.played_at == played_at, group_clause)

    async def _plays_for_key(self, session: AsyncSession, key: GroupingKey) -> List[BoardGamePlay]:
        res = await session.execute(
            select(BoardGamePlay)
            .where(*self._key_filter(key))
            .order_by(BoardGamePlay.created_at, BoardGamePlay.id)
            .execution_options(populate_existing=True)
        )
        return list(res.scalars().all())

    async def _leading_candidates(
        self, session: AsyncSession, key: GroupingKey, exclude_id: Optional[int] = None
    ) -> List[BoardGamePlay]:
        stmt = select(BoardGamePlay).where(*self._key_filter(key), BoardGamePlay.is_excluded.is_(False))
        if exclude_id is not None:
            stmt = stmt.where(BoardGamePlay.id != exclude_id)
        res = await session.execute(
            stmt.order_by(BoardGamePlay.created_at, BoardGamePlay.id).execution_options(populate_existing=True)
        )
        return list(res.scalars().all())

    async def _followers(self, session: AsyncSession, play: BoardGamePlay) -> List[BoardGamePlay]:
        if play.id is None:
            return []
        res = await session.execute(
            select(BoardGamePlay)
            .where(BoardGamePlay.leading_play_id == play.id, BoardGamePlay.id != play.id)
            .order_by(BoardGamePlay.created_at, BoardGamePlay.id)
            .execution_options(populate_existing=True)
        )
        return list(res.scalars().all())

    async def _orphans(self, session: AsyncSession, key: GroupingKey) -> List[BoardGamePlay]:
        """Excluded plays whose leading play was deleted outside the resolver (FK set to NULL)."""
        res = await session.execute(
            select(BoardGamePlay)
            .where(
                *self._key_filter(key),
                BoardGamePlay.is_excluded.is_(True),
                BoardGamePlay.leading_play_id.is_(None),
            )
            .order_by(BoardGamePlay.created_at, BoardGamePlay.id)
            .execution_options(populate_existing=True)
        )
        return list(res.scalars().all())

    async def _cluster_creators(
        self, session: AsyncSession, leaders: Sequence[BoardGamePlay], skip_ids: Iterable[int] = ()
    ) -> Clusters:
        """Creators already present under each leading play, the leader's own creator included."""
        clusters: Clusters = {leader.id: {leader.created_by_user_id} for leader in leaders}
        if not clusters:
            return clusters
        stmt = select(BoardGamePlay.leading_play_id, BoardGamePlay.created_by_user_id).where(
            BoardGamePlay.leading_play_id.in_(list(clusters)),
            BoardGamePlay.is_excluded.is_(True),
        )
        skip_ids = [i for i in skip_ids if i is not None]
        if skip_ids:
            stmt = stmt.where(BoardGamePlay.id.notin_(skip_ids))
        for leading_id, creator_id in (await session.execute(stmt)).all():
            clusters[leading_id].add(creator_id)
        return clusters

    async def identity_sets(self, session: AsyncSession, plays: Sequence[BoardGamePlay]) -> Dict[int, IdentitySet]:
        """Sorted participant identity keys per play; BGG usernames of local users count as that user."""
        usernames = {
            participant.bgg_username.casefold()
            for play in plays
            for participant in play.participants
            if participant.bgg_username
        }
        local_users: Dict[str, int] = {}
        if usernames:
            rows = await session.execute(
                select(User.id, User.bgg_username).where(func.lower(User.bgg_username).in_(usernames))
            )
            local_users = {name.casefold(): user_id for user_id, name in rows.all()}

        def _key(participant) -> IdentityKey:
            identity = participant.identity
            if isinstance(identity, ExternalUsername):
                user_id = local_users.get(identity.username.casefold())
                if user_id is not None:
                    return ("user", str(user_id))
            return identity_key(identity)

        return {play.id: tuple(sorted(_key(p) for p in play.participants)) for play in plays}

    @staticmethod
    def _joins(play: BoardGamePlay, leader: BoardGamePlay, sets: Dict[int, IdentitySet], clusters: Clusters) -> bool:
        """Same table, and nobody in the leader's cluster logged it under the same account."""
        return sets[leader.id] == sets[play.id] and play.created_by_user_id not in clusters[leader.id]

    @classmethod
    def _reassign(
        cls,
        followers: Sequence[BoardGamePlay],
        sets: Dict[int, IdentitySet],
        anchors: Sequence[BoardGamePlay],
        clusters: Clusters,
    ) -> None:
        """Point each follower at the first matching anchor, promoting the earliest unmatched one."""
        promoted: List[BoardGamePlay] = []
        for follower in sorted(followers, key=_tie_break):
            target = next((a for a in [*anchors, *promoted] if cls._joins(follower, a, sets, clusters)), None)
            if target is None:
                follower.mark_leading()
                promoted.append(follower)
                clusters[follower.id] = {follower.created_by_user_id}
                logger.info("Play #%s promoted to leading", follower.id)
            else:
                follower.mark_excluded(target)
                clusters[target.id].add(follower.created_by_user_id)

    async def _rehome(
        self,
        session: AsyncSession,
        key: GroupingKey,
        plays: Sequence[BoardGamePlay],
        exclude_id: Optional[int] = None,
    ) -> None:
        """Re-point plays that lost their leading play to another leader of the key, or promote them."""
        if key[2] is None:
            for play in plays:
                play.mark_leading()
            return
        anchors = await self._leading_candidates(session, key, exclude_id)
        sets = await self.identity_sets(session, [*plays, *anchors])
        clusters = await self._cluster_creators(session, anchors, skip_ids=[p.id for p in plays])
        self._reassign(plays, sets, anchors, clusters)

    async def _repair_orphans(self, session: AsyncSession, key: GroupingKey, exclude_id: Optional[int] = None) -> None:
        orphans = await self._orphans(session, key)
        if not orphans:
            return
        logger.warning("Dedup: %s excluded play(s) in key %s lost their leading play, re-homing", len(orphans), key)
        await self._rehome(session, key, orphans, exclude_id)
        await session.flush()

    async def _detach(self, session: AsyncSession, play: BoardGamePlay, key: GroupingKey) -> None:
        followers = await self._followers(session, play)
        if play.is_excluded:
            play.mark_leading()
        if followers:
            await self._rehome(session, key, followers, exclude_id=play.id)

    async def _resolve_locked(self, session: AsyncSession, play: BoardGamePlay) -> None:
        if play.group_id is None:
            # personal plays are never merged
            if play.is_excluded:
                play.mark_leading()
            return

        candidates = await self._leading_candidates(session, play.dedup_key, exclude_id=play.id)
        followers = await self._followers(session, play)
        sets = await self.identity_sets(session, [play, *candidates, *followers])
        clusters = await self._cluster_creators(session, candidates, skip_ids=[play.id])

        match = next((c for c in candidates if self._joins(play, c, sets, clusters)), None)
        if match is None:
            if play.is_excluded:
                play.mark_leading()
            return

        play.mark_excluded(match)
        clusters[match.id].add(play.created_by_user_id)
        logger.info("Play #%s excluded as duplicate of #%s", play.id, match.id)
        if followers:
            self._reassign(followers, sets, anchors=[match], clusters=clusters)

    async def _recompute(self, session: AsyncSession, key: GroupingKey, plays: List[BoardGamePlay]) -> int:
        if key[2] is None:
            for play in plays:
                play.mark_leading()
            return 0

        sets = await self.identity_sets(session, plays)
        leaders: List[BoardGamePlay] = []
        clusters: Clusters = {}
        targets: Dict[int, BoardGamePlay] = {}
        for play in plays:
            target = next((leader for leader in leaders if self._joins(play, leader, sets, clusters)), None)
            if target is None:
                leaders.append(play)
                clusters[play.id] = {play.created_by_user_id}
            else:
                targets[play.id] = target
                clusters[target.id].add(play.created_by_user_id)
        # apply in two passes so no row briefly points at a non-leading play
        for play in leaders:
            play.mark_leading()
        for play in plays:
            if play.id in targets:
                play.mark_excluded(targets[play.id])
        await session.flush()
        return len(targets)
