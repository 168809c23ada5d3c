"""
Automation keeper for the raffle.

Polls the permissionless upkeep check and, when a draw is due, performs the
gated trigger. The keeper never retries inside a tick; the next tick simply
polls again. A round waiting on the oracle is only reported, never aborted.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

from raffle.lottery.errors import OracleRequestFailed, UpkeepNotNeeded
from raffle.lottery.event_manager import WINNER_RESOLVED
from raffle.lottery.models import OperatorStatus, RoundState
from raffle.lottery.raffle import Raffle
from raffle.utils.logger import get_logger

logger = get_logger(__name__)


class RaffleOperator:
    """Keeper loop that advances rounds."""

    def __init__(self, raffle: Raffle, config: Dict[str, Any]) -> None:
        self._raffle = raffle
        operator_cfg = config.get("operator", {})
        self._check_interval = float(operator_cfg.get("check_interval_sec", 10))
        self._stuck_after = int(operator_cfg.get("stuck_after_sec", 600))
        self.status = OperatorStatus()
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    async def initialize(self) -> None:
        """Register for winner notifications."""
        logger.info("Initializing raffle operator")
        self._raffle.events.add_listener(WINNER_RESOLVED, self._on_winner)

    async def start(self) -> None:
        if self.status.is_running:
            logger.warning("Raffle operator already running")
            return
        self.status.is_running = True
        self._stop_event.clear()
        self._task = asyncio.create_task(self._loop(), name="raffle-operator")
        logger.info("Raffle operator started (check every %ss)", self._check_interval)

    async def stop(self) -> None:
        if not self.status.is_running:
            return
        logger.info("Stopping raffle operator")
        self.status.is_running = False
        self._stop_event.set()
        if self._task:
            await self._task
            self._task = None
        self._raffle.events.remove_listener(WINNER_RESOLVED, self._on_winner)
        logger.info("Raffle operator stopped")

    def get_status(self) -> Dict[str, Any]:
        return {
            "status": "running" if self.status.is_running else "stopped",
            "round": self._raffle.round_number,
            "state": self._raffle.state.name,
            "last_check": self.status.last_check.isoformat() if self.status.last_check else None,
            "last_request_id": self.status.last_trigger_request_id,
            "last_winner": self.status.last_winner,
            "draws_triggered": self.status.draws_triggered,
            "consecutive_failures": self.status.consecutive_trigger_failures,
        }

    def _on_winner(self, payload: Dict[str, Any]) -> None:
        self.status.last_winner = payload.get("winner")

    async def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as exc:
                logger.error("Error in operator loop: %s", exc)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._check_interval)
            except asyncio.TimeoutError:
                pass

    async def run_once(self) -> Optional[int]:
        """One keeper tick; returns the request id when a draw was triggered."""
        self.status.record_check()
        check = self._raffle.evaluate()

        if check.state == RoundState.CALCULATING:
            self._warn_if_stuck()
            return None
        if not check.upkeep_needed:
            return None

        try:
            request_id = await asyncio.to_thread(self._raffle.trigger_draw)
        except UpkeepNotNeeded as exc:
            logger.debug("Upkeep no longer needed: %s", exc)
            return None
        except OracleRequestFailed as exc:
            self.status.increment_trigger_failures()
            logger.error("Draw trigger failed (%s in a row): %s", self.status.consecutive_trigger_failures, exc)
            return None

        self.status.reset_trigger_failures()
        self.status.draws_triggered += 1
        self.status.last_trigger_request_id = request_id
        logger.info("Draw triggered, request id %s", request_id)
        return request_id

    def _warn_if_stuck(self) -> None:
        since = self._raffle.pending_since
        if since is None:
            return
        waiting = self._raffle.now() - since
        if waiting >= self._stuck_after:
            logger.warning(
                "Request %s has waited %ss for randomness; entries stay closed until it is fulfilled",
                self._raffle.pending_request_id, waiting,
            )
