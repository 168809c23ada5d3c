"""
Entry Ledger - ordered participants of the current round and the pool balance
"""

from typing import Dict, List

from raffle.utils.logger import get_logger

logger = get_logger(__name__)


class EntryLedger:
    """Holds the current round's entries.

    The same participant may appear any number of times; every entry is a
    separate slot in the draw.
    """

    def __init__(self):
        self._players: List[str] = []
        self._contributions: List[int] = []
        self._balance = 0

    @property
    def balance(self) -> int:
        return self._balance

    def __len__(self) -> int:
        return len(self._players)

    def add(self, player: str, contribution: int) -> int:
        """Append an entry and return its index"""
        self._players.append(player)
        self._contributions.append(contribution)
        self._balance += contribution
        return len(self._players) - 1

    def get_player(self, index: int) -> str:
        """Get participant at index; negative indexes are rejected"""
        if index < 0 or index >= len(self._players):
            raise IndexError(f"No player at index {index} (players: {len(self._players)})")
        return self._players[index]

    def players(self) -> List[str]:
        return list(self._players)

    def get_entry_count(self, player: str) -> int:
        """Number of slots held by a participant in this round"""
        return sum(1 for p in self._players if p == player)

    def get_player_total_amount(self, player: str) -> int:
        """Total amount contributed by a participant in this round"""
        return sum(amount for p, amount in zip(self._players, self._contributions) if p == player)

    def summarize(self) -> Dict[str, int]:
        """Per-participant contribution totals, in first-entry order"""
        totals: Dict[str, int] = {}
        for player, amount in zip(self._players, self._contributions):
            totals[player] = totals.get(player, 0) + amount
        return totals

    def clear(self) -> int:
        """Empty the ledger and return the balance it held"""
        released = self._balance
        self._players = []
        self._contributions = []
        self._balance = 0
        logger.debug("Ledger cleared, released %s", released)
        return released
