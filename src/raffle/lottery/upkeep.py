"""Upkeep predicate: is a draw due?"""

from __future__ import annotations

from raffle.lottery.models import RoundState, UpkeepCheck


def evaluate_upkeep(
    *,
    now: int,
    last_timestamp: int,
    interval: int,
    state: RoundState,
    balance: int,
    player_count: int,
) -> UpkeepCheck:
    """Side-effect-free readiness check over a consistent round snapshot."""
    elapsed = now - last_timestamp
    return UpkeepCheck(
        time_passed=elapsed >= interval,
        is_open=state == RoundState.OPEN,
        has_balance=balance > 0,
        has_players=player_count > 0,
        balance=balance,
        player_count=player_count,
        state=state,
        time_remaining=max(0, interval - elapsed),
    )
