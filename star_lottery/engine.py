"""Game lifecycle: create, join, detect full, draw a winner, settle.

States only move forward: waiting -> full -> completed. The engine never
writes balances itself; every star movement goes through the payment
service so money handling stays in one place.
"""
import random
import secrets
from decimal import ROUND_FLOOR, Decimal
from typing import List, Optional

from .config import Settings
from .errors import (
    AlreadyJoined,
    GameFull,
    GameNotFound,
    InvalidGameConfig,
    LotteryError,
    NoPlayers,
    PaymentFailed,
)
from .logging_config import get_logger
from .models import Game, GamePlayer, GameStatus, Participant, utcnow
from .payment import StarsPaymentService
from .storage import GameStore, check_joinable
from .subscriptions import EventCallback, Subscription

logger = get_logger(__name__)

DEFAULT_WINNER_SHARE = 0.7


def winner_amount(prize_pool: int, share: float = DEFAULT_WINNER_SHARE) -> int:
    """floor(prize_pool * share), computed without float rounding surprises."""
    amount = Decimal(prize_pool) * Decimal(str(share))
    return int(amount.to_integral_value(rounding=ROUND_FLOOR))


class GameEngine:
    def __init__(
        self,
        store: GameStore,
        payments: StarsPaymentService,
        winner_share: float = DEFAULT_WINNER_SHARE,
        auto_select_winner: bool = True,
        rng: Optional[random.Random] = None,
    ):
        self.store = store
        self.payments = payments
        self.winner_share = winner_share
        self.auto_select_winner = auto_select_winner
        self.rng = rng or secrets.SystemRandom()

    @classmethod
    def from_settings(cls, settings: Settings, store: GameStore, payments: StarsPaymentService) -> "GameEngine":
        return cls(
            store,
            payments,
            winner_share=settings.winner_share,
            auto_select_winner=settings.auto_select_winner,
        )

    async def create_game(self, max_players: int, entry_fee: int) -> Game:
        if max_players is None or max_players <= 0:
            raise InvalidGameConfig(f"max_players must be positive, got {max_players}")
        if entry_fee is None or entry_fee <= 0:
            raise InvalidGameConfig(f"entry_fee must be positive, got {entry_fee}")
        game = await self.store.create_game(max_players, entry_fee)
        logger.info("Game created game_id=%s max_players=%s entry_fee=%s", game.id, max_players, entry_fee)
        return game

    async def get_game(self, game_id: str) -> Game:
        game = await self.store.get_game(game_id)
        if game is None:
            raise GameNotFound(f"game {game_id} not found")
        return game

    async def get_current_game(self) -> Optional[Game]:
        return await self.store.get_waiting_game()

    async def get_game_players(self, game_id: str) -> List[GamePlayer]:
        return await self.store.list_players(game_id)

    def subscribe_to_updates(self, game_id: str, callback: EventCallback) -> Subscription:
        return self.store.subscribe(game_id, callback)

    async def join_game(self, game_id: str, participant: Participant) -> GamePlayer:
        """Charge the entry fee and record the participant; returns the new player record."""
        game = await self.store.get_game(game_id)
        if game is None:
            raise GameNotFound(f"game {game_id} not found")

        # Cheap pre-checks so obviously doomed joins are never charged.
        # The store re-checks all of them atomically on insert.
        check_joinable(game)
        players = await self.store.list_players(game_id)
        if len(players) >= game.max_players:
            raise GameFull(f"game {game_id} is full")
        if any(p.user_id == participant.id for p in players):
            raise AlreadyJoined(f"user {participant.id} already joined game {game_id}")

        reference = f"join:{game_id}:{participant.id}"
        payment = await self.payments.charge(participant.id, game.entry_fee, reference=reference)
        if not payment.success:
            raise PaymentFailed(
                f"charge of {game.entry_fee} stars failed for user {participant.id}: {payment.error}",
                reason=payment.error,
                amount=game.entry_fee,
            )

        try:
            player, game = await self.store.insert_player(game_id, participant, payment.transaction_id)
        except LotteryError as exc:
            logger.warning(
                "Join rejected after charge, refunding game_id=%s user_id=%s error=%s",
                game_id,
                participant.id,
                exc.code,
            )
            refund = await self.payments.refund(participant.id, game.entry_fee, reference=payment.transaction_id)
            if not refund.success:
                logger.error(
                    "Refund failed game_id=%s user_id=%s tx=%s error=%s",
                    game_id,
                    participant.id,
                    payment.transaction_id,
                    refund.error,
                )
            raise

        logger.info(
            "Player joined game_id=%s user_id=%s prize_pool=%s status=%s",
            game_id,
            participant.id,
            game.prize_pool,
            game.status.value,
        )

        if game.status == GameStatus.FULL and self.auto_select_winner:
            try:
                await self.select_winner(game_id)
            except LotteryError as exc:
                # The join itself succeeded; the draw can be retried explicitly.
                logger.warning("Automatic winner selection failed game_id=%s error=%s", game_id, exc.code)
        return player

    async def select_winner(self, game_id: str) -> Game:
        """Draw a winner uniformly, pay the winner share and complete the game."""
        game = await self.get_game(game_id)
        if game.status == GameStatus.COMPLETED:
            return game

        players = await self.store.list_players(game_id)
        if not players:
            raise NoPlayers(f"game {game_id} has no players")

        if game.status == GameStatus.WAITING:
            # Closed before the draw so every paying player is in it.
            game = await self.store.update_game_status(game_id, GameStatus.FULL)
            players = await self.store.list_players(game_id)
            logger.info("Game closed early for draw game_id=%s players=%s", game_id, len(players))

        if game.pending_winner_id is None:
            drawn = self.rng.choice(players)
            game = await self.store.set_pending_winner(game_id, drawn.user_id)
            logger.info("Winner drawn game_id=%s user_id=%s players=%s", game_id, game.pending_winner_id, len(players))
        winner_id = game.pending_winner_id

        amount = winner_amount(game.prize_pool, self.winner_share)
        payout = await self.payments.credit(winner_id, amount, reference=f"payout:{game_id}")
        if not payout.success:
            logger.warning("Payout failed, game stays open for retry game_id=%s winner=%s", game_id, winner_id)
            raise PaymentFailed(f"payout of {amount} stars to {winner_id} failed: {payout.error}")

        game = await self.store.update_game_status(
            game_id,
            GameStatus.COMPLETED,
            winner_id=winner_id,
            completed_at=utcnow(),
        )
        logger.info(
            "Game completed game_id=%s winner=%s payout=%s organizer_share=%s tx=%s",
            game_id,
            winner_id,
            amount,
            game.prize_pool - amount,
            payout.transaction_id,
        )
        return game
