"""Game and join-record persistence.

Two strategies share the GameStore contract: an in-memory store for demo
mode and a SQLModel-backed store. Both enforce capacity and uniqueness
inside a single unit of work, so racing joins cannot overshoot max_players.
"""
import asyncio
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from .config import Settings, StorageMode
from .database import GameDB, GamePlayerDB
from .db import init_db, make_engine, make_session_factory, storage_session
from .errors import AlreadyJoined, GameFull, GameNotFound, GameNotJoinable, StorageUnavailable
from .logging_config import get_logger
from .models import (
    STATUS_ORDER,
    Game,
    GameEvent,
    GamePlayer,
    GameStatus,
    Participant,
    PaymentStatus,
    utcnow,
)
from .subscriptions import EventCallback, Subscription, SubscriptionHub

logger = get_logger(__name__)

GAME_FIELDS = ("winner_id", "completed_at", "pending_winner_id")


def check_transition(current: GameStatus, new: GameStatus):
    if STATUS_ORDER[GameStatus(new)] <= STATUS_ORDER[GameStatus(current)]:
        raise ValueError(f"illegal game transition {GameStatus(current).value} -> {GameStatus(new).value}")


def check_joinable(game: Game):
    if game.status == GameStatus.FULL:
        raise GameFull(f"game {game.id} is full")
    if game.status != GameStatus.WAITING:
        raise GameNotJoinable(f"game {game.id} is {game.status.value}")
    if game.pending_winner_id is not None:
        raise GameNotJoinable(f"game {game.id} already drew a winner")


class GameStore(ABC):
    """Persistence Collaborator contract consumed by the game engine."""

    def __init__(self):
        self.hub = SubscriptionHub()

    @abstractmethod
    async def create_game(self, max_players: int, entry_fee: int) -> Game:
        ...

    @abstractmethod
    async def get_game(self, game_id: str) -> Optional[Game]:
        ...

    @abstractmethod
    async def get_waiting_game(self) -> Optional[Game]:
        """Most recently created game still in `waiting`."""

    @abstractmethod
    async def insert_player(
        self, game_id: str, participant: Participant, transaction_id: str
    ) -> Tuple[GamePlayer, Game]:
        """Atomically add a paid player, bump the prize pool and flip to `full` at capacity."""

    @abstractmethod
    async def list_players(self, game_id: str) -> List[GamePlayer]:
        """Players of a game ordered by joined_at."""

    @abstractmethod
    async def update_game_status(self, game_id: str, new_status: GameStatus, **fields) -> Game:
        ...

    @abstractmethod
    async def set_pending_winner(self, game_id: str, user_id: str) -> Game:
        """Record the drawn winner unless one was already recorded; return the stored game."""

    def subscribe(self, game_id: str, callback: EventCallback) -> Subscription:
        return self.hub.subscribe(game_id, callback)

    async def _publish(self, event_type: str, game: Game):
        await self.hub.publish(GameEvent(type=event_type, game_id=game.id, game=game))

    async def _publish_transition(self, game: Game):
        if game.status == GameStatus.FULL:
            await self._publish("game_full", game)
        elif game.status == GameStatus.COMPLETED:
            await self._publish("game_completed", game)


class InMemoryGameStore(GameStore):
    """Demo store; state lives for the lifetime of the process."""

    def __init__(self):
        super().__init__()
        self._games: Dict[str, Game] = {}
        self._players: Dict[str, List[GamePlayer]] = {}
        self._lock = asyncio.Lock()
        self._counter = 0

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}-{self._counter}"

    async def create_game(self, max_players: int, entry_fee: int) -> Game:
        async with self._lock:
            game = Game(
                id=self._next_id("demo-game"),
                status=GameStatus.WAITING,
                max_players=max_players,
                entry_fee=entry_fee,
                prize_pool=0,
                created_at=utcnow(),
            )
            self._games[game.id] = game
            self._players[game.id] = []
        await self._publish("game_created", game.model_copy())
        return game.model_copy()

    async def get_game(self, game_id: str) -> Optional[Game]:
        game = self._games.get(game_id)
        return game.model_copy() if game else None

    async def get_waiting_game(self) -> Optional[Game]:
        for game in reversed(list(self._games.values())):
            if game.status == GameStatus.WAITING:
                return game.model_copy()
        return None

    async def insert_player(
        self, game_id: str, participant: Participant, transaction_id: str
    ) -> Tuple[GamePlayer, Game]:
        async with self._lock:
            game = self._games.get(game_id)
            if game is None:
                raise GameNotFound(f"game {game_id} not found")
            check_joinable(game)
            players = self._players[game_id]
            if len(players) >= game.max_players:
                raise GameFull(f"game {game_id} is full")
            if any(p.user_id == participant.id for p in players):
                raise AlreadyJoined(f"user {participant.id} already joined game {game_id}")

            player = GamePlayer(
                id=self._next_id("player"),
                game_id=game_id,
                user_id=participant.id,
                display_name=participant.name,
                joined_at=utcnow(),
                payment_status=PaymentStatus.COMPLETED,
                transaction_id=transaction_id,
            )
            players.append(player)
            game.prize_pool += game.entry_fee
            if len(players) >= game.max_players:
                game.status = GameStatus.FULL
            snapshot = game.model_copy()

        await self._publish("player_joined", snapshot)
        if snapshot.status == GameStatus.FULL:
            await self._publish("game_full", snapshot)
        return player.model_copy(), snapshot

    async def list_players(self, game_id: str) -> List[GamePlayer]:
        players = self._players.get(game_id, [])
        return [p.model_copy() for p in sorted(players, key=lambda p: p.joined_at)]

    async def update_game_status(self, game_id: str, new_status: GameStatus, **fields) -> Game:
        async with self._lock:
            game = self._games.get(game_id)
            if game is None:
                raise GameNotFound(f"game {game_id} not found")
            if game.status == new_status:
                return game.model_copy()
            check_transition(game.status, new_status)
            game.status = GameStatus(new_status)
            for key, value in fields.items():
                if key not in GAME_FIELDS:
                    raise ValueError(f"unknown game field {key}")
                setattr(game, key, value)
            snapshot = game.model_copy()
        await self._publish_transition(snapshot)
        return snapshot

    async def set_pending_winner(self, game_id: str, user_id: str) -> Game:
        async with self._lock:
            game = self._games.get(game_id)
            if game is None:
                raise GameNotFound(f"game {game_id} not found")
            if game.pending_winner_id is not None:
                return game.model_copy()
            game.pending_winner_id = user_id
            snapshot = game.model_copy()
        await self._publish("winner_pending", snapshot)
        return snapshot


class SqlGameStore(GameStore):
    """SQLModel store; capacity is guarded by a compare-and-swap on prize_pool."""

    def __init__(self, session_factory, max_attempts: int = 5):
        super().__init__()
        self.session_factory = session_factory
        self.max_attempts = max_attempts
        self.games = GameDB.__table__

    async def create_game(self, max_players: int, entry_fee: int) -> Game:
        with storage_session(self.session_factory) as session:
            row = GameDB(max_players=max_players, entry_fee=entry_fee, status=GameStatus.WAITING.value)
            session.add(row)
            session.commit()
            session.refresh(row)
            game = Game.model_validate(row)
        await self._publish("game_created", game)
        return game

    async def get_game(self, game_id: str) -> Optional[Game]:
        with storage_session(self.session_factory) as session:
            row = session.get(GameDB, game_id)
            return Game.model_validate(row) if row else None

    async def get_waiting_game(self) -> Optional[Game]:
        with storage_session(self.session_factory) as session:
            statement = (
                select(GameDB)
                .where(GameDB.status == GameStatus.WAITING.value)
                .order_by(GameDB.created_at.desc())
                .limit(1)
            )
            row = session.exec(statement).first()
            return Game.model_validate(row) if row else None

    def _read_for_join(self, session, game_id: str, participant: Participant) -> Tuple[GameDB, int]:
        """Load the game and its player count, rejecting joins that cannot succeed."""
        row = session.get(GameDB, game_id)
        if row is None:
            raise GameNotFound(f"game {game_id} not found")
        check_joinable(Game.model_validate(row))

        count = session.exec(
            select(func.count()).select_from(GamePlayerDB).where(GamePlayerDB.game_id == game_id)
        ).one()
        if count >= row.max_players:
            raise GameFull(f"game {game_id} is full")
        existing = session.exec(
            select(GamePlayerDB).where(GamePlayerDB.game_id == game_id, GamePlayerDB.user_id == participant.id)
        ).first()
        if existing:
            raise AlreadyJoined(f"user {participant.id} already joined game {game_id}")
        return row, count

    async def insert_player(
        self, game_id: str, participant: Participant, transaction_id: str
    ) -> Tuple[GamePlayer, Game]:
        for attempt in range(1, self.max_attempts + 1):
            with storage_session(self.session_factory) as session:
                row, count = self._read_for_join(session, game_id, participant)
                game = Game.model_validate(row)

                new_status = GameStatus.FULL if count + 1 >= game.max_players else GameStatus.WAITING
                result = session.connection().execute(
                    update(self.games)
                    .where(
                        self.games.c.id == game_id,
                        self.games.c.status == GameStatus.WAITING.value,
                        self.games.c.pending_winner_id.is_(None),
                        self.games.c.prize_pool == game.prize_pool,
                    )
                    .values(prize_pool=game.prize_pool + game.entry_fee, status=new_status.value)
                )
                if result.rowcount != 1:
                    session.rollback()
                    logger.info(
                        "Concurrent join detected, re-checking game_id=%s user_id=%s attempt=%s",
                        game_id,
                        participant.id,
                        attempt,
                    )
                    continue

                player_row = GamePlayerDB(
                    game_id=game_id,
                    user_id=participant.id,
                    display_name=participant.name,
                    payment_status=PaymentStatus.COMPLETED.value,
                    transaction_id=transaction_id,
                )
                session.add(player_row)
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    raise AlreadyJoined(f"user {participant.id} already joined game {game_id}")

                session.refresh(row)
                session.refresh(player_row)
                player = GamePlayer.model_validate(player_row)
                snapshot = Game.model_validate(row)

            await self._publish("player_joined", snapshot)
            if snapshot.status == GameStatus.FULL:
                await self._publish("game_full", snapshot)
            return player, snapshot

        raise StorageUnavailable(f"too much contention joining game {game_id}")

    async def list_players(self, game_id: str) -> List[GamePlayer]:
        with storage_session(self.session_factory) as session:
            statement = (
                select(GamePlayerDB)
                .where(GamePlayerDB.game_id == game_id)
                .order_by(GamePlayerDB.joined_at, GamePlayerDB.id)
            )
            return [GamePlayer.model_validate(row) for row in session.exec(statement).all()]

    async def update_game_status(self, game_id: str, new_status: GameStatus, **fields) -> Game:
        for key in fields:
            if key not in GAME_FIELDS:
                raise ValueError(f"unknown game field {key}")
        with storage_session(self.session_factory) as session:
            row = session.get(GameDB, game_id)
            if row is None:
                raise GameNotFound(f"game {game_id} not found")
            current = GameStatus(row.status)
            if current == new_status:
                return Game.model_validate(row)
            check_transition(current, new_status)

            result = session.connection().execute(
                update(self.games)
                .where(self.games.c.id == game_id, self.games.c.status == current.value)
                .values(status=GameStatus(new_status).value, **fields)
            )
            session.commit()
            session.refresh(row)
            snapshot = Game.model_validate(row)
            if result.rowcount != 1 and snapshot.status != new_status:
                raise ValueError(f"game {game_id} moved to {snapshot.status.value} concurrently")

        if result.rowcount == 1:
            await self._publish_transition(snapshot)
        return snapshot

    async def set_pending_winner(self, game_id: str, user_id: str) -> Game:
        with storage_session(self.session_factory) as session:
            row = session.get(GameDB, game_id)
            if row is None:
                raise GameNotFound(f"game {game_id} not found")
            result = session.connection().execute(
                update(self.games)
                .where(self.games.c.id == game_id, self.games.c.pending_winner_id.is_(None))
                .values(pending_winner_id=user_id)
            )
            session.commit()
            session.refresh(row)
            snapshot = Game.model_validate(row)

        if result.rowcount == 1:
            await self._publish("winner_pending", snapshot)
        return snapshot


def create_game_store(settings: Settings, session_factory=None) -> GameStore:
    """Pick the store strategy named by settings.storage_mode."""
    if settings.storage_mode == StorageMode.IN_MEMORY:
        logger.info("Using in-memory game store")
        return InMemoryGameStore()
    if session_factory is None:
        engine = make_engine(settings.database_url)
        init_db(engine)
        session_factory = make_session_factory(engine)
    logger.info("Using persistent game store url=%s", settings.database_url)
    return SqlGameStore(session_factory)
