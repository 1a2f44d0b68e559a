"""Presentation-side flow of the mini-app: refresh, join, start a new game."""
from typing import List, Optional

from pydantic import BaseModel

from .config import Settings
from .engine import GameEngine, winner_amount
from .errors import AlreadyJoined, LotteryError, PaymentFailed, StorageUnavailable
from .host import HostBridge
from .logging_config import get_logger
from .models import Game, GamePlayer, GameStatus
from .payment import StarsPaymentService

logger = get_logger(__name__)


class GameView(BaseModel):
    game: Optional[Game] = None
    players: List[GamePlayer] = []
    balance: int = 0
    has_joined: bool = False
    winner: Optional[GamePlayer] = None
    winner_amount: int = 0
    offline: bool = False


class LotteryPresenter:
    def __init__(self, engine: GameEngine, payments: StarsPaymentService, host: HostBridge, settings: Settings):
        self.engine = engine
        self.payments = payments
        self.host = host
        self.settings = settings
        self.view = GameView()

    async def refresh(self) -> GameView:
        """Reload the current game (creating one if none is waiting) and the user's balance."""
        participant = self.host.get_current_participant()
        try:
            game = await self._current_or_last()
            players = await self.engine.get_game_players(game.id)
            balance = await self.payments.get_balance(participant.id)
        except StorageUnavailable as exc:
            logger.warning("Falling back to offline view: %s", exc.detail)
            self.view = GameView(balance=self.settings.starting_balance, offline=True)
            return self.view

        winner = None
        if game.winner_id:
            winner = next((p for p in players if p.user_id == game.winner_id), None)
        self.view = GameView(
            game=game,
            players=players,
            balance=balance,
            has_joined=any(p.user_id == participant.id for p in players),
            winner=winner,
            winner_amount=winner_amount(game.prize_pool, self.engine.winner_share),
        )
        return self.view

    async def _current_or_last(self) -> Game:
        # A game that just completed stays on screen so the winner can be shown.
        if self.view.game is not None:
            shown = await self.engine.store.get_game(self.view.game.id)
            if shown is not None and shown.status != GameStatus.WAITING:
                return shown
        game = await self.engine.get_current_game()
        if game is None:
            game = await self.engine.create_game(self.settings.default_max_players, self.settings.default_entry_fee)
        return game

    async def join(self) -> bool:
        """Join the displayed game; every rejection is shown through the host."""
        if self.view.offline or self.view.game is None:
            self.host.notify(StorageUnavailable.user_message)
            return False
        if self.view.balance < self.view.game.entry_fee:
            error = PaymentFailed(reason=PaymentFailed.INSUFFICIENT_BALANCE, amount=self.view.game.entry_fee)
            self.host.notify(error.user_message)
            return False
        if self.view.has_joined:
            self.host.notify(AlreadyJoined.user_message)
            return False

        participant = self.host.get_current_participant()
        try:
            await self.engine.join_game(self.view.game.id, participant)
        except LotteryError as exc:
            logger.info("Join failed user_id=%s error=%s", participant.id, exc.code)
            self.host.notify(exc.user_message)
            await self.refresh()
            return False

        await self.refresh()
        if self.view.winner is not None:
            self.host.notify(
                f"{self.view.winner.display_name} won {self.view.winner_amount} stars!"
            )
        return True

    async def start_new_game(self) -> bool:
        if not self.host.confirm("Start a new game?"):
            return False
        try:
            game = await self.engine.create_game(
                self.settings.default_max_players, self.settings.default_entry_fee
            )
        except LotteryError as exc:
            self.host.notify(exc.user_message)
            return False
        self.view = GameView(game=game)
        await self.refresh()
        return True
