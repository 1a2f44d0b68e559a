"""Mini-app host surface, passed explicitly to the presentation layer."""
from typing import List, Optional, Protocol

from .models import Participant


class HostBridge(Protocol):
    def notify(self, message: str) -> None:
        ...

    def confirm(self, message: str) -> bool:
        ...

    def get_current_participant(self) -> Participant:
        ...


class StaticHost:
    """Host with a fixed participant that records messages; used for demos and tests."""

    def __init__(self, participant: Participant, confirm_answer: bool = True):
        self.participant = participant
        self.confirm_answer = confirm_answer
        self.messages: List[str] = []
        self.prompts: List[str] = []

    def notify(self, message: str) -> None:
        self.messages.append(message)

    def confirm(self, message: str) -> bool:
        self.prompts.append(message)
        return self.confirm_answer

    def get_current_participant(self) -> Participant:
        return self.participant

    @property
    def last_message(self) -> Optional[str]:
        return self.messages[-1] if self.messages else None
