"""Randomness oracle capability and the deterministic stand-in coordinator.

The raffle only ever talks to a `RandomnessOracle`. Production deployments use
`raffle.blockchain.client.VRFCoordinatorClient`; development networks and the
test-suite use `MockVRFCoordinator`, which never generates randomness on its
own initiative and is driven by explicit `fulfill_random_words` calls.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from threading import Lock
from typing import Dict, List, Optional, Protocol, Sequence, Set

from eth_account import Account
from web3 import Web3

from raffle.lottery.models import RandomnessRequest
from raffle.utils.common import normalize_address
from raffle.utils.logger import get_logger

logger = get_logger(__name__)

BASE_FEE = Web3.to_wei("0.25", "ether")  # 0.25 LINK per request
GAS_PRICE_LINK = 10**9  # LINK per gas


class OracleError(Exception):
    """The coordinator refused an operation."""


class NonexistentRequest(OracleError):
    pass


class InvalidSubscription(OracleError):
    pass


class InvalidConsumer(OracleError):
    pass


class InsufficientSubscriptionBalance(OracleError):
    pass


class RandomnessConsumer(Protocol):
    """Anything that can receive a fulfillment callback."""

    @property
    def address(self) -> str: ...

    def resolve(self, request_id: int, random_words: Sequence[int], caller: str) -> str: ...


class RandomnessOracle(ABC):
    """Swappable source of verifiable randomness."""

    @property
    @abstractmethod
    def address(self) -> str:
        """Identity that fulfillment callbacks arrive from."""

    @abstractmethod
    def register_consumer(self, consumer: RandomnessConsumer) -> None:
        """Bind the object whose `resolve` receives fulfillments."""

    @abstractmethod
    def request_random_words(
        self,
        *,
        key_hash: str,
        subscription_id: int,
        request_confirmations: int,
        callback_gas_limit: int,
        num_words: int,
        consumer: str,
    ) -> int:
        """Issue a request and return its id. Fire-and-forget: the answer arrives via `resolve`."""


def derive_random_words(seed: int, num_words: int) -> List[int]:
    """Expand one seed into `num_words` words as keccak256(abi.encode(seed, i))."""
    return [
        int.from_bytes(Web3.solidity_keccak(["uint256", "uint256"], [seed, i]), "big")
        for i in range(num_words)
    ]


class MockVRFCoordinator(RandomnessOracle):
    """In-process stand-in for a VRF coordinator with subscription accounting."""

    def __init__(self, base_fee: int = BASE_FEE, gas_price_link: int = GAS_PRICE_LINK, address: Optional[str] = None) -> None:
        self.base_fee = base_fee
        self.gas_price_link = gas_price_link
        self._address = normalize_address(address) if address else Account.create().address
        self._lock = Lock()
        self._next_subscription_id = 1
        self._next_request_id = 1
        self._subscriptions: Dict[int, int] = {}
        self._subscription_consumers: Dict[int, Set[str]] = {}
        self._consumers: Dict[str, RandomnessConsumer] = {}
        self._requests: Dict[int, RandomnessRequest] = {}
        self.last_request_id = 0

    @property
    def address(self) -> str:
        return self._address

    # ------------------------------------------------------------------
    # Subscription management
    # ------------------------------------------------------------------
    def create_subscription(self) -> int:
        with self._lock:
            sub_id = self._next_subscription_id
            self._next_subscription_id += 1
            self._subscriptions[sub_id] = 0
            self._subscription_consumers[sub_id] = set()
        logger.info("Created subscription %s", sub_id)
        return sub_id

    def fund_subscription(self, subscription_id: int, amount: int) -> None:
        with self._lock:
            if subscription_id not in self._subscriptions:
                raise InvalidSubscription(f"Subscription {subscription_id} does not exist")
            self._subscriptions[subscription_id] += amount
        logger.info("Funded subscription %s with %s", subscription_id, amount)

    def add_consumer(self, subscription_id: int, consumer: str) -> None:
        with self._lock:
            if subscription_id not in self._subscriptions:
                raise InvalidSubscription(f"Subscription {subscription_id} does not exist")
            self._subscription_consumers[subscription_id].add(normalize_address(consumer))

    def get_subscription_balance(self, subscription_id: int) -> int:
        with self._lock:
            if subscription_id not in self._subscriptions:
                raise InvalidSubscription(f"Subscription {subscription_id} does not exist")
            return self._subscriptions[subscription_id]

    def register_consumer(self, consumer: RandomnessConsumer) -> None:
        with self._lock:
            self._consumers[normalize_address(consumer.address)] = consumer

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------
    def request_random_words(
        self,
        *,
        key_hash: str,
        subscription_id: int,
        request_confirmations: int,
        callback_gas_limit: int,
        num_words: int,
        consumer: str,
    ) -> int:
        consumer = normalize_address(consumer)
        with self._lock:
            if subscription_id not in self._subscriptions:
                raise InvalidSubscription(f"Subscription {subscription_id} does not exist")
            if consumer not in self._subscription_consumers[subscription_id]:
                raise InvalidConsumer(f"{consumer} is not a consumer of subscription {subscription_id}")
            request_id = self._next_request_id
            self._next_request_id += 1
            self._requests[request_id] = RandomnessRequest(
                request_id=request_id,
                subscription_id=subscription_id,
                consumer=consumer,
                key_hash=key_hash,
                callback_gas_limit=callback_gas_limit,
                num_words=num_words,
                request_confirmations=request_confirmations,
            )
            self.last_request_id = request_id
        logger.info("RandomWordsRequested id=%s consumer=%s", request_id, consumer)
        return request_id

    def pending_requests(self) -> List[int]:
        with self._lock:
            return sorted(self._requests)

    def fulfill_random_words(
        self,
        request_id: int,
        consumer: str,
        random_words: Optional[Sequence[int]] = None,
    ) -> str:
        """Deliver randomness for `request_id` to `consumer` and return the consumer's result.

        Without `random_words` the words are derived from the request id. The
        request stays pending if the consumer raises, so a fulfillment that
        failed downstream can be delivered again.
        """
        consumer = normalize_address(consumer)
        with self._lock:
            request = self._requests.get(request_id)
            if request is None:
                raise NonexistentRequest("nonexistent request")
            target = self._consumers.get(consumer)
            if target is None:
                raise InvalidConsumer(f"No callback registered for {consumer}")
            balance = self._subscriptions[request.subscription_id]
            if balance < self.base_fee:
                raise InsufficientSubscriptionBalance(
                    f"Subscription {request.subscription_id} holds {balance}, needs {self.base_fee}"
                )

        words = list(random_words) if random_words is not None else derive_random_words(request_id, request.num_words)
        result = target.resolve(request_id, words, self.address)

        with self._lock:
            self._requests.pop(request_id, None)
            self._subscriptions[request.subscription_id] -= self.base_fee
        request.fulfilled = True
        request.random_words = words
        logger.info("RandomWordsFulfilled id=%s consumer=%s", request_id, consumer)
        return result
