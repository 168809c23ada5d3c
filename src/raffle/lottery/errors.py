"""Named failure outcomes of the raffle core.

Every error aborts the operation that raised it in full; nothing it touched
is left partially applied.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from raffle.lottery.models import UpkeepCheck


class RaffleError(Exception):
    """Base class for raffle failures."""


class InsufficientEntry(RaffleError):
    def __init__(self, contribution: int, entrance_fee: int) -> None:
        super().__init__(f"Contribution {contribution} is below the entrance fee {entrance_fee}")
        self.contribution = contribution
        self.entrance_fee = entrance_fee


class RoundClosed(RaffleError):
    def __init__(self) -> None:
        super().__init__("Raffle is calculating a winner; entries are closed")


class UpkeepNotNeeded(RaffleError):
    """Trigger attempted while at least one readiness predicate is false."""

    def __init__(self, check: "UpkeepCheck") -> None:
        super().__init__(
            "Upkeep not needed (balance={}, players={}, state={}, time_remaining={})".format(
                check.balance, check.player_count, check.state.name, check.time_remaining
            )
        )
        self.check = check


class UnknownRequest(RaffleError):
    def __init__(self, request_id: int, pending: Optional[int]) -> None:
        super().__init__(f"Request {request_id} does not match pending request {pending}")
        self.request_id = request_id
        self.pending = pending


class UnauthorizedFulfillment(RaffleError):
    def __init__(self, caller: str, coordinator: str) -> None:
        super().__init__(f"Only coordinator {coordinator} can fulfill, got {caller}")
        self.caller = caller
        self.coordinator = coordinator


class DisbursementFailed(RaffleError):
    def __init__(self, winner: str, amount: int) -> None:
        super().__init__(f"Payout of {amount} to {winner} failed; resolution rolled back")
        self.winner = winner
        self.amount = amount


class OracleRequestFailed(RaffleError):
    """The randomness request could not be issued; the round stays OPEN."""


class PayoutUnconfirmed(RaffleError):
    """The payout was broadcast but not yet confirmed.

    The round stays CALCULATING; delivering the same fulfillment again settles
    the transfer already in flight instead of paying a second time.
    """

    def __init__(self, winner: str, amount: int, tx_hash: Optional[str]) -> None:
        super().__init__(f"Payout of {amount} to {winner} is in flight (tx {tx_hash}); retry to settle it")
        self.winner = winner
        self.amount = amount
        self.tx_hash = tx_hash
