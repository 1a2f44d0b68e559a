"""Database models using SQLModel for persistence."""
from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from .models import utcnow


def _new_id() -> str:
    return str(uuid4())


class GameDB(SQLModel, table=True):
    """One lottery round."""
    __tablename__ = "games"

    id: str = Field(default_factory=_new_id, primary_key=True)
    status: str = Field(default="waiting", index=True)  # "waiting", "full", "completed"
    max_players: int
    entry_fee: int
    prize_pool: int = 0
    winner_id: Optional[str] = None
    pending_winner_id: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow, index=True)
    completed_at: Optional[datetime] = None


class GamePlayerDB(SQLModel, table=True):
    """A paid entry of one participant in one game."""
    __tablename__ = "game_players"
    __table_args__ = (UniqueConstraint("game_id", "user_id", name="uq_game_player"),)

    id: str = Field(default_factory=_new_id, primary_key=True)
    game_id: str = Field(foreign_key="games.id", index=True)
    user_id: str = Field(index=True)
    display_name: str
    payment_status: str = "pending"  # "pending", "completed", "failed"
    transaction_id: Optional[str] = None

    joined_at: datetime = Field(default_factory=utcnow)


class UserBalanceDB(SQLModel, table=True):
    """Star balance and lifetime totals of a participant."""
    __tablename__ = "user_balances"

    user_id: str = Field(primary_key=True)
    stars_balance: int = 0
    total_spent: int = 0
    total_won: int = 0
    games_played: int = 0
    games_won: int = 0

    updated_at: datetime = Field(default_factory=utcnow)


class StarTransactionDB(SQLModel, table=True):
    """Audit record of every star movement."""
    __tablename__ = "star_transactions"

    id: str = Field(default_factory=_new_id, primary_key=True)
    user_id: str = Field(index=True)
    transaction_type: str  # "entry_fee", "payout", "refund", "deposit"
    amount: int
    status: str = "completed"
    reference: Optional[str] = Field(default=None, index=True)
    # "{transaction_type}:{reference}" for movements applied at most once.
    idempotency_key: Optional[str] = Field(default=None, unique=True)

    created_at: datetime = Field(default_factory=utcnow)
