"""Runtime configuration resolved once at startup."""
import os
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from dotenv import load_dotenv


class StorageMode(str, Enum):
    PERSISTENT = "persistent"
    IN_MEMORY = "in_memory"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    storage_mode: StorageMode = StorageMode.IN_MEMORY
    database_url: str = "sqlite:///./star_lottery.db"
    starting_balance: int = 10
    default_max_players: int = 10
    default_entry_fee: int = 1
    winner_share: float = 0.7
    auto_select_winner: bool = True
    telegram_bot_token: Optional[str] = None
    telegram_api_base: str = "https://api.telegram.org"

    def __post_init__(self):
        if self.default_max_players <= 0:
            raise ValueError("DEFAULT_MAX_PLAYERS must be positive")
        if self.default_entry_fee <= 0:
            raise ValueError("DEFAULT_ENTRY_FEE must be positive")
        if not 0 < self.winner_share <= 1:
            raise ValueError("WINNER_SHARE must be in (0, 1]")
        if self.starting_balance < 0:
            raise ValueError("STARTING_BALANCE must not be negative")


def load_settings(env_file: Optional[str] = None) -> Settings:
    """Build Settings from the environment (and an optional .env file)."""
    load_dotenv(dotenv_path=env_file)

    raw_mode = os.getenv("STORAGE_MODE", StorageMode.IN_MEMORY.value).strip().lower()
    try:
        storage_mode = StorageMode(raw_mode)
    except ValueError:
        raise ValueError(f"unknown STORAGE_MODE: {raw_mode!r}") from None

    # Demo stores hand out a few stars so the game is playable without a payment rail.
    default_balance = 10 if storage_mode == StorageMode.IN_MEMORY else 0

    return Settings(
        storage_mode=storage_mode,
        database_url=os.getenv("DATABASE_URL", "sqlite:///./star_lottery.db"),
        starting_balance=int(os.getenv("STARTING_BALANCE", default_balance)),
        default_max_players=int(os.getenv("DEFAULT_MAX_PLAYERS", 10)),
        default_entry_fee=int(os.getenv("DEFAULT_ENTRY_FEE", 1)),
        winner_share=float(os.getenv("WINNER_SHARE", 0.7)),
        auto_select_winner=_env_bool("AUTO_SELECT_WINNER", True),
        telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN") or None,
        telegram_api_base=os.getenv("TELEGRAM_API_BASE", "https://api.telegram.org"),
    )
