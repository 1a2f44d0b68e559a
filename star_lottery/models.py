from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict


def utcnow() -> datetime:
    """Timezone-aware current UTC time; every stored timestamp goes through here."""
    return datetime.now(timezone.utc)


class GameStatus(str, Enum):
    WAITING = "waiting"
    FULL = "full"
    COMPLETED = "completed"


# Forward-only ordering of the game lifecycle.
STATUS_ORDER = {GameStatus.WAITING: 0, GameStatus.FULL: 1, GameStatus.COMPLETED: 2}


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class Participant(BaseModel):
    id: str
    name: str


class Game(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    status: GameStatus = GameStatus.WAITING
    max_players: int
    entry_fee: int
    prize_pool: int = 0
    winner_id: Optional[str] = None
    pending_winner_id: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None

    @property
    def capacity_pool(self) -> int:
        return self.max_players * self.entry_fee


class GamePlayer(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    game_id: str
    user_id: str
    display_name: str
    joined_at: datetime
    payment_status: PaymentStatus = PaymentStatus.PENDING
    transaction_id: Optional[str] = None


class UserBalance(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    stars_balance: int = 0
    total_spent: int = 0
    total_won: int = 0
    games_played: int = 0
    games_won: int = 0
    updated_at: datetime


class StarTransaction(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    transaction_type: str  # "entry_fee", "payout", "refund", "deposit"
    amount: int
    status: str = "completed"
    reference: Optional[str] = None
    created_at: datetime


class PaymentResult(BaseModel):
    success: bool
    transaction_id: Optional[str] = None
    error: Optional[str] = None


class GameEvent(BaseModel):
    type: str  # "game_created", "player_joined", "game_full", "winner_pending", "game_completed"
    game_id: str
    game: Game


class CreateGameRequest(BaseModel):
    max_players: Optional[int] = None
    entry_fee: Optional[int] = None


class JoinRequest(BaseModel):
    user_id: str
    display_name: str


class InvoiceRequest(BaseModel):
    user_id: str
    amount: int
    description: str = "Star Lottery balance top-up"


class GameState(BaseModel):
    game: Game
    players: List[GamePlayer]
    winner_amount: int
