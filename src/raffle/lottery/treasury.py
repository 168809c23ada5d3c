"""Custody and payout of the raffle pool."""

from __future__ import annotations

from abc import ABC, abstractmethod
from threading import Lock
from typing import Any, Dict, Optional, Set

from raffle.utils.common import normalize_address
from raffle.utils.logger import get_logger

logger = get_logger(__name__)


class TreasuryError(Exception):
    """A value movement could not be completed."""


class InsufficientFunds(TreasuryError):
    pass


class TransferRejected(TreasuryError):
    pass


class InvalidPayment(TreasuryError):
    """A payment reference does not prove the claimed contribution."""


class PayoutPending(TreasuryError):
    """A transfer was broadcast but its outcome is not known yet.

    Retrying `disburse` with the same reference settles the same transfer
    instead of sending a new one.
    """

    def __init__(self, message: str, tx_hash: Optional[str] = None) -> None:
        super().__init__(message)
        self.tx_hash = tx_hash


class Treasury(ABC):
    """Holds entry contributions and pays the pool out to winners."""

    @abstractmethod
    def receive(self, sender: str, amount: int, payment_ref: Optional[str] = None) -> None:
        """Take custody of a contribution. Raises TreasuryError on failure.

        `payment_ref` identifies the transfer that carried the value, where the
        custody backend needs one.
        """

    @abstractmethod
    def disburse(self, recipient: str, amount: int, reference: Optional[Any] = None) -> None:
        """Send `amount` to `recipient`. Raises TreasuryError on failure.

        Calls sharing a `reference` describe the same payout and never move
        value twice.
        """


class InMemoryTreasury(Treasury):
    """Account book used by development networks and tests."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._accounts: Dict[str, int] = {}
        self._reserve = 0
        self._rejecting: Set[str] = set()

    @property
    def reserve(self) -> int:
        with self._lock:
            return self._reserve

    def fund(self, account: str, amount: int) -> None:
        if amount < 0:
            raise ValueError("amount must be non-negative")
        account = normalize_address(account)
        with self._lock:
            self._accounts[account] = self._accounts.get(account, 0) + amount

    def balance_of(self, account: str) -> int:
        with self._lock:
            return self._accounts.get(normalize_address(account), 0)

    def reject_payments_to(self, account: str, rejecting: bool = True) -> None:
        """Make `account` refuse incoming transfers, like a contract without a payable fallback."""
        account = normalize_address(account)
        with self._lock:
            if rejecting:
                self._rejecting.add(account)
            else:
                self._rejecting.discard(account)

    def receive(self, sender: str, amount: int, payment_ref: Optional[str] = None) -> None:
        sender = normalize_address(sender)
        with self._lock:
            available = self._accounts.get(sender, 0)
            if available < amount:
                raise InsufficientFunds(f"{sender} holds {available}, needs {amount}")
            self._accounts[sender] = available - amount
            self._reserve += amount
        logger.debug("Received %s from %s", amount, sender)

    def disburse(self, recipient: str, amount: int, reference: Optional[Any] = None) -> None:
        recipient = normalize_address(recipient)
        with self._lock:
            if recipient in self._rejecting:
                raise TransferRejected(f"{recipient} rejected a transfer of {amount}")
            if self._reserve < amount:
                raise InsufficientFunds(f"Reserve holds {self._reserve}, cannot pay {amount}")
            self._reserve -= amount
            self._accounts[recipient] = self._accounts.get(recipient, 0) + amount
        logger.info("Disbursed %s to %s", amount, recipient)
