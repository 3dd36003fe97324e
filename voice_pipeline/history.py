import logging
from collections import deque
from typing import Deque, Iterator, List, Tuple

from .models import ASSISTANT_ROLE, USER_ROLE, ConversationTurn

logger = logging.getLogger("history")

DEFAULT_MAX_TURNS = 10


class ConversationHistory:
    """Bounded, insertion-ordered log of conversation turns.

    Appending beyond ``max_turns`` evicts the oldest entries first. The
    history lives in memory only and is discarded with its pipeline.
    """

    def __init__(self, max_turns: int = DEFAULT_MAX_TURNS):
        """
        Initialize an empty history.

        Args:
            max_turns: Maximum number of entries kept (user and assistant
                turns count separately)
        """
        if max_turns < 1:
            raise ValueError("max_turns must be at least 1")
        self.max_turns = max_turns
        self._turns: Deque[ConversationTurn] = deque()

    def append(self, turn: ConversationTurn):
        """Append a turn, then evict from the front until within the cap."""
        self._turns.append(turn)
        while len(self._turns) > self.max_turns:
            evicted = self._turns.popleft()
            logger.debug(f"Evicted oldest {evicted.role} turn from history")

    def append_exchange(self, user_text: str, assistant_text: str):
        """Append one user turn followed by one assistant turn."""
        self.append(ConversationTurn(USER_ROLE, user_text))
        self.append(ConversationTurn(ASSISTANT_ROLE, assistant_text))

    def snapshot(self) -> Tuple[ConversationTurn, ...]:
        """Return an immutable copy of the current turns, oldest first."""
        return tuple(self._turns)

    def to_payload(self) -> List[dict]:
        """Serialize the current turns for a backend request."""
        return [turn.to_dict() for turn in self._turns]

    def clear(self):
        self._turns.clear()

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self) -> Iterator[ConversationTurn]:
        return iter(self.snapshot())
