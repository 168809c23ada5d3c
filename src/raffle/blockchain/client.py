"""Web3-backed randomness oracle and treasury for production networks."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from eth_account import Account
from web3 import Web3
from web3.contract import Contract
from web3.exceptions import TimeExhausted, TransactionNotFound, Web3Exception

from raffle.blockchain.oracle import OracleError, RandomnessConsumer, RandomnessOracle, derive_random_words
from raffle.lottery.errors import RaffleError, UnknownRequest
from raffle.lottery.treasury import (
    InvalidPayment,
    PayoutPending,
    Treasury,
    TreasuryError,
    TransferRejected,
)
from raffle.utils.common import normalize_address
from raffle.utils.logger import get_logger

logger = get_logger(__name__)

FULFILLED_TOPIC = Web3.to_hex(Web3.keccak(text="RandomWordsFulfilled(uint256,uint256,uint96,bool)"))


class Web3Connection:
    """Shared RPC connection and signing account."""

    def __init__(self, config: Dict[str, Any]):
        blockchain_cfg = config.get("blockchain", {})
        self.rpc_url: str = blockchain_cfg.get("rpc_url", "http://localhost:8545")
        try:
            self.rpc_timeout: float = float(blockchain_cfg.get("rpc_timeout", 10.0))
        except (TypeError, ValueError):
            self.rpc_timeout = 10.0
        self.chain_id: int = int(blockchain_cfg.get("chain_id", 31337))

        private_key = blockchain_cfg.get("operator_private_key")
        self.account = Account.from_key(private_key) if private_key else None
        if self.account:
            logger.info("Operator account loaded: %s", self.account.address)

        gas_price_setting = blockchain_cfg.get("gas_price")
        self._gas_price_override: Optional[int] = None
        if gas_price_setting:
            self._gas_price_override = Web3.to_wei(Decimal(str(gas_price_setting)), "gwei")
        self._gas_multiplier = float(blockchain_cfg.get("gas_multiplier", 1.15))
        self._tx_timeout = int(blockchain_cfg.get("tx_timeout_seconds", 180))

        self._w3: Optional[Web3] = None

    @property
    def w3(self) -> Web3:
        if not self._w3:
            raise RuntimeError("Web3 provider not initialised")
        return self._w3

    def connect(self) -> Web3:
        if self._w3 is not None:
            return self._w3
        w3 = Web3(Web3.HTTPProvider(self.rpc_url, request_kwargs={"timeout": self.rpc_timeout}))
        if not w3.is_connected():
            raise ConnectionError(f"Failed to connect to RPC at {self.rpc_url}")
        actual_chain_id = w3.eth.chain_id
        if actual_chain_id != self.chain_id:
            logger.warning("Chain ID mismatch: expected %s, got %s", self.chain_id, actual_chain_id)
        logger.info("Connected to RPC %s (chain id %s)", self.rpc_url, self.chain_id)
        self._w3 = w3
        return w3

    def gas_price(self) -> int:
        return self._gas_price_override or self.w3.eth.gas_price

    def sign(self, txn: Dict[str, Any]) -> Tuple[bytes, str, int]:
        """Fill gas/nonce and sign with the operator account. Returns (raw, tx hash, nonce)."""
        if not self.account:
            raise ValueError("Operator account not configured")
        w3 = self.w3
        txn = dict(txn)
        txn.setdefault("from", self.account.address)
        txn.setdefault("chainId", self.chain_id)
        txn.setdefault("nonce", w3.eth.get_transaction_count(self.account.address, "pending"))
        txn.setdefault("gasPrice", self.gas_price())
        if "gas" not in txn:
            txn["gas"] = int(w3.eth.estimate_gas(txn) * self._gas_multiplier)

        signed = self.account.sign_transaction(txn)
        raw = None
        for attr in ("raw_transaction", "rawTransaction"):
            raw = getattr(signed, attr, None)
            if raw is not None:
                break
        return bytes(raw), Web3.to_hex(signed.hash), int(txn["nonce"])

    def broadcast(self, raw: bytes) -> str:
        tx_hash = Web3.to_hex(self.w3.eth.send_raw_transaction(raw))
        logger.info("Sent transaction %s", tx_hash)
        return tx_hash

    def wait_for_receipt(self, tx_hash: str) -> Dict[str, Any]:
        """Block until mined; raises web3's TimeExhausted after `tx_timeout_seconds`."""
        return self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self._tx_timeout)

    def send(self, txn: Dict[str, Any]) -> Dict[str, Any]:
        """Sign, send and wait for the receipt."""
        raw, tx_hash, _ = self.sign(txn)
        self.broadcast(raw)
        return self.wait_for_receipt(tx_hash)


class VRFCoordinatorClient(RandomnessOracle):
    """Drives a deployed VRF coordinator: sends requests, watches fulfillments.

    Fulfillment events carry the VRF output seed; the random words handed to
    the consumer are expanded from it the same way the coordinator does.
    """

    def __init__(
        self,
        connection: Web3Connection,
        coordinator_address: str,
        *,
        poll_interval: float = 5.0,
        start_block_offset: int = 500,
    ):
        if not coordinator_address:
            raise ValueError("A coordinator address is required for the VRF client")
        self._conn = connection
        self._address = normalize_address(coordinator_address)
        self._poll_interval = poll_interval
        self._start_block_offset = start_block_offset

        self._contract: Optional[Contract] = None
        self._consumers: Dict[str, RandomnessConsumer] = {}
        self._outstanding: Dict[int, Dict[str, Any]] = {}
        self._from_block: Optional[int] = None

    @property
    def address(self) -> str:
        return self._address

    def initialize(self) -> None:
        w3 = self._conn.connect()
        abi_path = self._resolve_abi_path()
        logger.info("Loading VRF coordinator ABI from %s", abi_path)
        with abi_path.open("r", encoding="utf-8") as handle:
            abi = json.load(handle)
        code = w3.eth.get_code(self._address)
        if len(code) == 0:
            raise ValueError(f"No contract deployed at {self._address}")
        self._contract = w3.eth.contract(address=self._address, abi=abi)
        self._from_block = max(0, int(w3.eth.block_number) - self._start_block_offset)
        logger.info("VRF coordinator bound at %s, watching from block %s", self._address, self._from_block)

    @staticmethod
    def _resolve_abi_path() -> Path:
        path = Path(__file__).parent / "abi" / "VRFCoordinatorV2.abi"
        if not path.is_file():
            raise FileNotFoundError(f"VRF coordinator ABI not found at {path}")
        return path

    def _ensure_contract(self) -> Contract:
        if not self._contract:
            raise RuntimeError("Coordinator contract not initialised")
        return self._contract

    def register_consumer(self, consumer: RandomnessConsumer) -> None:
        self._consumers[normalize_address(consumer.address)] = consumer

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
        contract = self._ensure_contract()
        consumer = normalize_address(consumer)
        if self._conn.account is None or normalize_address(self._conn.account.address) != consumer:
            raise OracleError(f"Requests must be sent from the consumer account {consumer}")
        try:
            tx_function = contract.functions.requestRandomWords(
                Web3.to_bytes(hexstr=key_hash), subscription_id, request_confirmations, callback_gas_limit, num_words
            )
            txn = tx_function.build_transaction(
                {
                    "from": consumer,
                    "nonce": self._conn.w3.eth.get_transaction_count(consumer),
                    "gasPrice": self._conn.gas_price(),
                }
            )
            receipt = self._conn.send(txn)
        except (ValueError, ConnectionError, Web3Exception) as exc:
            raise OracleError(f"requestRandomWords failed: {exc}") from exc
        if int(receipt["status"]) != 1:
            raise OracleError(f"requestRandomWords reverted in {Web3.to_hex(receipt['transactionHash'])}")

        events = contract.events.RandomWordsRequested().process_receipt(receipt)
        if not events:
            raise OracleError("requestRandomWords receipt has no RandomWordsRequested event")
        request_id = int(events[0]["args"]["requestId"])
        self._outstanding[request_id] = {"consumer": consumer, "num_words": num_words}
        logger.info("RandomWordsRequested id=%s in block %s", request_id, receipt["blockNumber"])
        return request_id

    def _fetch_fulfillments(self) -> List[Dict[str, Any]]:
        contract = self._ensure_contract()
        w3 = self._conn.w3
        latest = int(w3.eth.block_number)
        from_block = self._from_block or 0
        if from_block > latest:
            return []
        raw_logs = w3.eth.get_logs(
            {"fromBlock": from_block, "toBlock": latest, "address": self._address, "topics": [FULFILLED_TOPIC]}
        )
        self._from_block = latest + 1
        fulfillments = []
        for raw in raw_logs:
            decoded = contract.events.RandomWordsFulfilled().process_log(raw)
            fulfillments.append(dict(decoded["args"]))
        return fulfillments

    def poll_fulfillments(self) -> int:
        """Deliver any fulfillments for outstanding requests; returns how many resolved."""
        resolved = 0
        for args in self._fetch_fulfillments():
            request_id = int(args["requestId"])
            request = self._outstanding.get(request_id)
            if request is None:
                continue
            if not args["success"]:
                logger.warning("Coordinator reported failed fulfillment for request %s", request_id)
            request["words"] = derive_random_words(int(args["outputSeed"]), request["num_words"])

        for request_id, request in list(self._outstanding.items()):
            words: Optional[Sequence[int]] = request.get("words")
            if words is None:
                continue
            consumer = self._consumers.get(request["consumer"])
            if consumer is None:
                logger.error("No consumer registered for %s", request["consumer"])
                continue
            try:
                consumer.resolve(request_id, words, self._address)
            except UnknownRequest:
                logger.warning("Consumer no longer waits for request %s; dropping it", request_id)
                self._outstanding.pop(request_id, None)
                continue
            except RaffleError as exc:
                logger.error("Fulfillment of request %s failed, will retry: %s", request_id, exc)
                continue
            self._outstanding.pop(request_id, None)
            resolved += 1
        return resolved

    async def watch(self, stop_event: asyncio.Event) -> None:
        """Poll for fulfillments until `stop_event` is set."""
        logger.info("Watching VRF fulfillments every %ss", self._poll_interval)
        while not stop_event.is_set():
            try:
                await asyncio.to_thread(self.poll_fulfillments)
            except Exception as exc:
                logger.error("Fulfillment poll failed: %s", exc)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                pass


@dataclass
class PendingPayout:
    """A signed payout transfer whose outcome has not been observed yet."""

    recipient: str
    amount: int
    raw: bytes
    tx_hash: str
    nonce: int


class Web3Treasury(Treasury):
    """Pays winners in native currency from the operator account.

    Contributions are sent to the operator account on chain first; `receive`
    then checks the transfer named by `payment_ref` and accepts each transfer
    only once.

    A payout is signed once per reference and kept until its receipt is seen,
    so retries after a timeout re-broadcast the same transaction (same nonce)
    rather than sign a new one. A fresh transfer is only signed when the old
    one can no longer be mined because its nonce went to another transaction.
    """

    def __init__(self, connection: Web3Connection):
        self._conn = connection
        self._lock = Lock()
        self._used_payments: Set[str] = set()
        self._pending: Dict[Any, PendingPayout] = {}

    @property
    def operator(self) -> str:
        if not self._conn.account:
            raise TreasuryError("Operator account not configured")
        return normalize_address(self._conn.account.address)

    # ------------------------------------------------------------------
    # Contributions
    # ------------------------------------------------------------------
    def receive(self, sender: str, amount: int, payment_ref: Optional[str] = None) -> None:
        if not payment_ref:
            raise InvalidPayment("A payment transaction hash is required")
        tx_hash = payment_ref.lower()
        sender = normalize_address(sender)
        operator = self.operator

        with self._lock:
            if tx_hash in self._used_payments:
                raise InvalidPayment(f"Payment {tx_hash} was already used for an entry")
            try:
                receipt = self._conn.w3.eth.get_transaction_receipt(tx_hash)
                tx = self._conn.w3.eth.get_transaction(tx_hash)
            except TransactionNotFound as exc:
                raise InvalidPayment(f"Payment {tx_hash} is not mined") from exc
            except (ValueError, ConnectionError, Web3Exception) as exc:
                raise TreasuryError(f"Could not look up payment {tx_hash}: {exc}") from exc

            if int(receipt["status"]) != 1:
                raise InvalidPayment(f"Payment {tx_hash} reverted")
            if normalize_address(tx["from"]) != sender:
                raise InvalidPayment(f"Payment {tx_hash} was not sent by {sender}")
            if not tx.get("to") or normalize_address(tx["to"]) != operator:
                raise InvalidPayment(f"Payment {tx_hash} was not sent to {operator}")
            if int(tx["value"]) < amount:
                raise InvalidPayment(f"Payment {tx_hash} carries {tx['value']} wei, entry claims {amount}")
            self._used_payments.add(tx_hash)

        logger.info("Contribution of %s wei from %s verified in %s", amount, sender, tx_hash)

    # ------------------------------------------------------------------
    # Payouts
    # ------------------------------------------------------------------
    def disburse(self, recipient: str, amount: int, reference: Optional[Any] = None) -> None:
        recipient = normalize_address(recipient)
        key = reference if reference is not None else (recipient, amount)

        with self._lock:
            pending = self._pending.get(key)
            if pending is not None:
                if (pending.recipient, pending.amount) != (recipient, amount):
                    raise TreasuryError(
                        f"Payout {key} is already in flight to {pending.recipient} for {pending.amount}"
                    )
                if self._settle(key, pending):
                    return

            try:
                raw, tx_hash, nonce = self._conn.sign({"to": recipient, "value": amount, "gas": 21000})
            except (ValueError, ConnectionError, Web3Exception) as exc:
                raise TreasuryError(f"Transfer of {amount} wei to {recipient} failed: {exc}") from exc
            pending = PendingPayout(recipient, amount, raw, tx_hash, nonce)
            self._pending[key] = pending
            self._broadcast(pending)
            self._confirm(key, pending)

    def _settle(self, key: Any, pending: PendingPayout) -> bool:
        """Resolve a payout from an earlier attempt.

        Returns True when it was paid, False when it was dropped and a new
        transfer is needed; raises while it is still in flight or reverted.
        """
        eth = self._conn.w3.eth
        try:
            nonce_spent = eth.get_transaction_count(self.operator) > pending.nonce
            receipt = self._lookup_receipt(pending.tx_hash)
        except (ValueError, ConnectionError, Web3Exception) as exc:
            raise PayoutPending(f"Could not check payout {pending.tx_hash}: {exc}", pending.tx_hash) from exc

        if receipt is not None:
            self._finish(key, pending, receipt)
            return True
        if nonce_spent:
            logger.warning("Payout %s was dropped (nonce %s reused); signing a new transfer",
                           pending.tx_hash, pending.nonce)
            del self._pending[key]
            return False

        self._broadcast(pending)
        self._confirm(key, pending)
        return True

    def _lookup_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        try:
            return self._conn.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None

    def _broadcast(self, pending: PendingPayout) -> None:
        try:
            self._conn.broadcast(pending.raw)
        except (ValueError, ConnectionError, Web3Exception) as exc:
            # the node may have accepted it before failing; only a receipt or a spent nonce tells
            logger.warning("Broadcast of payout %s failed: %s", pending.tx_hash, exc)
            raise PayoutPending(f"Broadcast of payout {pending.tx_hash} failed: {exc}", pending.tx_hash) from exc

    def _confirm(self, key: Any, pending: PendingPayout) -> None:
        try:
            receipt = self._conn.wait_for_receipt(pending.tx_hash)
        except TimeExhausted as exc:
            raise PayoutPending(f"Payout {pending.tx_hash} not mined yet", pending.tx_hash) from exc
        except (ValueError, ConnectionError, Web3Exception) as exc:
            raise PayoutPending(f"Could not confirm payout {pending.tx_hash}: {exc}", pending.tx_hash) from exc
        self._finish(key, pending, receipt)

    def _finish(self, key: Any, pending: PendingPayout, receipt: Dict[str, Any]) -> None:
        del self._pending[key]
        if int(receipt["status"]) != 1:
            raise TransferRejected(f"Transfer to {pending.recipient} reverted in {pending.tx_hash}")
        logger.info("Paid %s wei to %s in %s", pending.amount, pending.recipient, pending.tx_hash)
