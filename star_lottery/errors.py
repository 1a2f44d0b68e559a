"""Failure taxonomy shared by the engine, its collaborators and the API."""
from typing import Optional


class LotteryError(Exception):
    """Base class for every recoverable lottery failure."""

    code = "lottery_error"
    status_code = 400
    user_message = "Something went wrong. Please try again later."

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail or self.user_message
        super().__init__(self.detail)

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.user_message, "detail": self.detail}


class GameNotJoinable(LotteryError):
    code = "game_not_joinable"
    status_code = 409
    user_message = "This game is no longer accepting players."


class GameNotFound(GameNotJoinable):
    code = "game_not_found"
    status_code = 404
    user_message = "Game not found. Please try again later."


class GameFull(LotteryError):
    code = "game_full"
    status_code = 409
    user_message = "The game is full!"


class AlreadyJoined(LotteryError):
    code = "already_joined"
    status_code = 409
    user_message = "You have already joined this game!"


class PaymentFailed(LotteryError):
    code = "payment_failed"
    status_code = 402
    user_message = "Payment failed. Please try again."

    INSUFFICIENT_BALANCE = "insufficient_balance"

    def __init__(self, detail: Optional[str] = None, reason: Optional[str] = None, amount: int = 1):
        self.reason = reason
        if reason == self.INSUFFICIENT_BALANCE:
            self.user_message = f"You need at least {amount} star{'' if amount == 1 else 's'} to join the game!"
        super().__init__(detail)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["reason"] = self.reason
        return data


class NoPlayers(LotteryError):
    code = "no_players"
    status_code = 409
    user_message = "Nobody has joined this game yet."


class InvalidGameConfig(LotteryError):
    code = "invalid_game_config"
    status_code = 422
    user_message = "Games need a positive player limit and entry fee."


class StorageUnavailable(LotteryError):
    code = "storage_unavailable"
    status_code = 503
    user_message = "The lottery is unavailable right now. Try again later."
