"""
Raffle core - round lifecycle, draw triggering and winner resolution.

A single co-located round record (ledger, state, pending request, clock
marker, recent winner) is guarded by one lock. Every mutator holds the lock
for its whole duration and notifications go out only after it is released,
so no observer ever sees a partially applied transition.

A round that has been handed to the oracle stays CALCULATING until a matching
fulfillment arrives; there is no timeout and no cancellation.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from threading import Lock
from typing import Callable, List, Optional, Sequence, Tuple

from raffle.blockchain.oracle import OracleError, RandomnessOracle
from raffle.lottery.errors import (
    DisbursementFailed,
    InsufficientEntry,
    OracleRequestFailed,
    PayoutUnconfirmed,
    RoundClosed,
    UnauthorizedFulfillment,
    UnknownRequest,
    UpkeepNotNeeded,
)
from raffle.lottery.event_manager import (
    DRAW_TRIGGERED,
    ENTRY_RECORDED,
    WINNER_RESOLVED,
    EventBus,
)
from raffle.lottery.ledger import EntryLedger
from raffle.lottery.models import RaffleConfig, RoundSnapshot, RoundState, UpkeepCheck
from raffle.lottery.treasury import PayoutPending, Treasury, TreasuryError
from raffle.lottery.upkeep import evaluate_upkeep
from raffle.utils.common import normalize_address
from raffle.utils.logger import get_logger

logger = get_logger(__name__)

Clock = Callable[[], int]


def system_clock() -> int:
    return int(time.time())


@dataclass
class RoundRecord:
    """All mutable raffle state. Pending request is set iff state is CALCULATING."""

    last_timestamp: int
    ledger: EntryLedger = field(default_factory=EntryLedger)
    state: RoundState = RoundState.OPEN
    pending_request_id: Optional[int] = None
    pending_since: Optional[int] = None
    recent_winner: Optional[str] = None
    round_number: int = 1


class Raffle:
    """Single-round raffle paying the whole pool to one VRF-selected winner."""

    def __init__(
        self,
        config: RaffleConfig,
        oracle: RandomnessOracle,
        treasury: Treasury,
        *,
        address: str,
        events: Optional[EventBus] = None,
        clock: Clock = system_clock,
    ) -> None:
        self.config = config
        self._oracle = oracle
        self._treasury = treasury
        self._address = normalize_address(address)
        self.events = events or EventBus()
        self._clock = clock
        self._lock = Lock()
        self._record = RoundRecord(last_timestamp=clock())
        self._coordinator = normalize_address(config.coordinator_address)

        logger.info(
            "Raffle %s created: fee=%s interval=%ss coordinator=%s",
            self._address, config.entrance_fee, config.interval, self._coordinator,
        )

    # ------------------------------------------------------------------
    # Entry
    # ------------------------------------------------------------------
    def join(self, contribution: int, player: str, payment_ref: Optional[str] = None) -> int:
        """Enter the current round; returns the entry's ledger index.

        `payment_ref` is handed to the treasury as proof of the contribution.
        """
        player = normalize_address(player)
        with self._lock:
            if contribution < self.config.entrance_fee:
                logger.warning("Rejected entry from %s: %s below fee", player, contribution)
                raise InsufficientEntry(contribution, self.config.entrance_fee)
            if self._record.state != RoundState.OPEN:
                logger.warning("Rejected entry from %s: round is %s", player, self._record.state.name)
                raise RoundClosed()
            self._treasury.receive(player, contribution, payment_ref)
            index = self._record.ledger.add(player, contribution)
            round_number = self._record.round_number
            now = self._clock()

        logger.info("Player %s entered round %s at index %s with %s", player, round_number, index, contribution)
        self.events.emit(
            ENTRY_RECORDED,
            {"player": player, "amount": contribution, "index": index, "round": round_number},
            event_time=now,
        )
        return index

    # ------------------------------------------------------------------
    # Upkeep
    # ------------------------------------------------------------------
    def _evaluate_locked(self, now: int) -> UpkeepCheck:
        record = self._record
        return evaluate_upkeep(
            now=now,
            last_timestamp=record.last_timestamp,
            interval=self.config.interval,
            state=record.state,
            balance=record.ledger.balance,
            player_count=len(record.ledger),
        )

    def evaluate(self, now: Optional[int] = None) -> UpkeepCheck:
        """Read-only readiness check; safe for anyone to poll."""
        with self._lock:
            return self._evaluate_locked(self._clock() if now is None else now)

    def check_upkeep(self, check_data: bytes = b"") -> Tuple[bool, bytes]:
        """Keeper-shaped variant of `evaluate`: (upkeep_needed, perform_data)."""
        return self.evaluate().upkeep_needed, b""

    def trigger_draw(self, now: Optional[int] = None) -> int:
        """Close the round and request randomness. Returns the request id."""
        with self._lock:
            now = self._clock() if now is None else now
            check = self._evaluate_locked(now)
            if not check.upkeep_needed:
                logger.info("Upkeep not needed: %s", check.to_dict())
                raise UpkeepNotNeeded(check)
            try:
                request_id = self._oracle.request_random_words(
                    key_hash=self.config.key_hash,
                    subscription_id=self.config.subscription_id,
                    request_confirmations=self.config.request_confirmations,
                    callback_gas_limit=self.config.callback_gas_limit,
                    num_words=self.config.num_words,
                    consumer=self._address,
                )
            except OracleError as exc:
                logger.error("Randomness request failed: %s", exc)
                raise OracleRequestFailed(str(exc)) from exc
            self._record.state = RoundState.CALCULATING
            self._record.pending_request_id = request_id
            self._record.pending_since = now
            round_number = self._record.round_number

        logger.info("Round %s calculating, request id %s", round_number, request_id)
        self.events.emit(DRAW_TRIGGERED, {"requestId": request_id, "round": round_number}, event_time=now)
        return request_id

    def perform_upkeep(self, perform_data: bytes = b"") -> int:
        return self.trigger_draw()

    # ------------------------------------------------------------------
    # Fulfillment
    # ------------------------------------------------------------------
    def resolve(self, request_id: int, random_words: Sequence[int], caller: str) -> str:
        """Pick the winner for the pending request, pay out and reopen. Returns the winner."""
        caller = normalize_address(caller)
        with self._lock:
            record = self._record
            if caller != self._coordinator:
                logger.warning("Rejected fulfillment from %s", caller)
                raise UnauthorizedFulfillment(caller, self._coordinator)
            if record.pending_request_id is None or request_id != record.pending_request_id:
                logger.warning("Rejected fulfillment for request %s (pending %s)", request_id, record.pending_request_id)
                raise UnknownRequest(request_id, record.pending_request_id)
            if not random_words:
                raise ValueError("random_words must not be empty")

            now = self._clock()
            player_count = len(record.ledger)
            winner_index = random_words[0] % player_count
            winner = record.ledger.get_player(winner_index)
            amount = record.ledger.balance

            try:
                self._treasury.disburse(winner, amount, reference=request_id)
            except PayoutPending as exc:
                logger.error("Payout of %s to %s unconfirmed (tx %s)", amount, winner, exc.tx_hash)
                raise PayoutUnconfirmed(winner, amount, exc.tx_hash) from exc
            except TreasuryError as exc:
                logger.error("Payout of %s to %s failed: %s", amount, winner, exc)
                raise DisbursementFailed(winner, amount) from exc

            record.ledger.clear()
            record.last_timestamp = now
            record.state = RoundState.OPEN
            record.pending_request_id = None
            record.pending_since = None
            record.recent_winner = winner
            snapshot = RoundSnapshot(
                round_number=record.round_number,
                winner=winner,
                prize=amount,
                player_count=player_count,
                request_id=request_id,
                random_word=random_words[0],
                finished_at=now,
            )
            record.round_number += 1

        logger.info("Round %s won by %s (index %s of %s), prize %s",
                    snapshot.round_number, winner, winner_index, player_count, amount)
        self.events.add_history_snapshot(snapshot)
        self.events.emit(
            WINNER_RESOLVED,
            {"winner": winner, "amount": amount, "requestId": request_id, "round": snapshot.round_number},
            event_time=now,
        )
        return winner

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def now(self) -> int:
        return self._clock()

    @property
    def address(self) -> str:
        return self._address

    @property
    def entrance_fee(self) -> int:
        return self.config.entrance_fee

    @property
    def interval(self) -> int:
        return self.config.interval

    @property
    def num_words(self) -> int:
        return self.config.num_words

    @property
    def request_confirmations(self) -> int:
        return self.config.request_confirmations

    @property
    def state(self) -> RoundState:
        with self._lock:
            return self._record.state

    @property
    def recent_winner(self) -> Optional[str]:
        with self._lock:
            return self._record.recent_winner

    @property
    def number_of_players(self) -> int:
        with self._lock:
            return len(self._record.ledger)

    @property
    def last_timestamp(self) -> int:
        with self._lock:
            return self._record.last_timestamp

    @property
    def balance(self) -> int:
        with self._lock:
            return self._record.ledger.balance

    @property
    def pending_request_id(self) -> Optional[int]:
        with self._lock:
            return self._record.pending_request_id

    @property
    def pending_since(self) -> Optional[int]:
        with self._lock:
            return self._record.pending_since

    @property
    def round_number(self) -> int:
        with self._lock:
            return self._record.round_number

    def get_player(self, index: int) -> str:
        with self._lock:
            return self._record.ledger.get_player(index)

    def get_players(self) -> List[str]:
        with self._lock:
            return self._record.ledger.players()

    def get_player_summary(self) -> dict:
        with self._lock:
            return self._record.ledger.summarize()
