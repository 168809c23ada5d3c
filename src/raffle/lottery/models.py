"""Core data models for the raffle backend."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import IntEnum
from typing import Any, Dict, List, Optional

REQUEST_CONFIRMATIONS = 3
NUM_WORDS = 1


class RoundState(IntEnum):
    """Raffle round states. OPEN accepts entries, CALCULATING awaits randomness."""

    OPEN = 0
    CALCULATING = 1


@dataclass(frozen=True)
class RaffleConfig:
    """Immutable per-deployment parameters."""

    entrance_fee: int
    interval: int
    key_hash: str
    subscription_id: int
    callback_gas_limit: int
    coordinator_address: str
    request_confirmations: int = REQUEST_CONFIRMATIONS
    num_words: int = NUM_WORDS
    network: str = "hardhat"

    def __post_init__(self) -> None:
        if self.entrance_fee <= 0:
            raise ValueError("entrance_fee must be positive")
        if self.interval <= 0:
            raise ValueError("interval must be positive")
        if self.num_words < 1:
            raise ValueError("num_words must be at least 1")


@dataclass
class UpkeepCheck:
    """Diagnostic breakdown of the upkeep predicate."""

    time_passed: bool
    is_open: bool
    has_balance: bool
    has_players: bool
    balance: int
    player_count: int
    state: RoundState
    time_remaining: int

    @property
    def upkeep_needed(self) -> bool:
        return self.time_passed and self.is_open and self.has_balance and self.has_players

    def to_dict(self) -> Dict[str, Any]:
        return {
            "upkeepNeeded": self.upkeep_needed,
            "timePassed": self.time_passed,
            "isOpen": self.is_open,
            "hasBalance": self.has_balance,
            "hasPlayers": self.has_players,
            "balance": self.balance,
            "playerCount": self.player_count,
            "state": self.state.name,
            "timeRemaining": self.time_remaining,
        }


@dataclass
class RoundSnapshot:
    """Historical record of a completed round."""

    round_number: int
    winner: str
    prize: int
    player_count: int
    request_id: int
    random_word: int
    finished_at: int


@dataclass
class LiveFeedItem:
    """Notification as retained by the event bus."""

    event_type: str
    message: str
    details: Dict[str, Any]
    event_time: int
    created_at: datetime = field(default_factory=datetime.utcnow)

    def get_item_id(self) -> str:
        return f"{self.details.get('round', 0)}-{self.event_time}-{self.event_type}"


@dataclass
class RandomnessRequest:
    """A randomness request as tracked by a coordinator."""

    request_id: int
    subscription_id: int
    consumer: str
    key_hash: str
    callback_gas_limit: int
    num_words: int
    request_confirmations: int
    fulfilled: bool = False
    random_words: Optional[List[int]] = None


@dataclass
class OperatorStatus:
    """Operational metrics for the keeper loop."""

    is_running: bool = False
    last_check: Optional[datetime] = None
    last_trigger_request_id: Optional[int] = None
    last_winner: Optional[str] = None
    consecutive_trigger_failures: int = 0
    draws_triggered: int = 0

    def record_check(self) -> None:
        self.last_check = datetime.utcnow()

    def reset_trigger_failures(self) -> None:
        self.consecutive_trigger_failures = 0

    def increment_trigger_failures(self) -> None:
        self.consecutive_trigger_failures += 1
