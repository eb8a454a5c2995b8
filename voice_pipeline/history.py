"""
Conversation history handed to the responder.

Turns are stored in order and bounded by a total character budget counted
over turn text. When an append pushes the total over the budget, the oldest
turns are evicted first, so what remains is always the most recent suffix.
"""
from collections import deque
from typing import Deque, List, Optional

from logging_setup import get_logger, Component
from .models import Turn


class ConversationHistory:
    def __init__(self, max_chars: int = 20000, session_id: Optional[str] = None):
        if max_chars <= 0:
            raise ValueError("max_chars must be positive")
        self.max_chars = max_chars
        self._turns: Deque[Turn] = deque()
        self._total = 0
        self.logger = get_logger(Component.HISTORY, session_id=session_id)

    @property
    def turns(self) -> List[Turn]:
        return list(self._turns)

    @property
    def total_chars(self) -> int:
        return self._total

    def __len__(self) -> int:
        return len(self._turns)

    def append(self, turn: Turn) -> None:
        self._turns.append(turn)
        self._total += len(turn.text)
        self._prune()

    def append_turn(self, user_text: str, reply_text: str) -> None:
        """Record one exchange as a user turn followed by a model turn."""
        self._turns.append(Turn(role="user", text=user_text))
        self._turns.append(Turn(role="model", text=reply_text))
        self._total += len(user_text) + len(reply_text)
        self._prune()

    def clear(self) -> None:
        self._turns.clear()
        self._total = 0

    def _prune(self) -> None:
        evicted = 0
        while self._total > self.max_chars and self._turns:
            oldest = self._turns.popleft()
            self._total -= len(oldest.text)
            evicted += 1
        if evicted:
            self.logger.debug(
                "History pruned",
                evicted_turns=evicted,
                retained_turns=len(self._turns),
                total_chars=self._total,
                max_chars=self.max_chars,
            )
