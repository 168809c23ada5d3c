"""
Raffle provisioning.

Development networks get an in-process stand-in coordinator with a funded
subscription and an in-memory treasury; production networks bind to the
preconfigured VRF coordinator and pay out from the operator account.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Dict, Optional

from eth_account import Account
from web3 import Web3

from raffle.blockchain.client import VRFCoordinatorClient, Web3Connection, Web3Treasury
from raffle.blockchain.oracle import BASE_FEE, GAS_PRICE_LINK, MockVRFCoordinator, RandomnessOracle
from raffle.lottery.event_manager import EventBus
from raffle.lottery.raffle import Clock, Raffle, system_clock
from raffle.lottery.treasury import InMemoryTreasury, Treasury
from raffle.utils.config import build_raffle_config, get_config_value, is_development_network
from raffle.utils.logger import get_logger

logger = get_logger(__name__)

VRF_SUB_FUND_AMOUNT = Web3.to_wei(30, "ether")


@dataclass
class Deployment:
    """Everything wired together for one network."""

    raffle: Raffle
    oracle: RandomnessOracle
    treasury: Treasury
    events: EventBus
    network: str
    development: bool
    connection: Optional[Web3Connection] = None


def deploy_mocks(base_fee: int = BASE_FEE, gas_price_link: int = GAS_PRICE_LINK) -> MockVRFCoordinator:
    logger.info("Local network detected! Deploying mocks...")
    coordinator = MockVRFCoordinator(base_fee, gas_price_link)
    logger.info("Mocks Deployed! coordinator=%s", coordinator.address)
    return coordinator


def deploy_raffle(
    config: Dict[str, Any],
    *,
    events: Optional[EventBus] = None,
    clock: Clock = system_clock,
) -> Deployment:
    events = events or EventBus(
        feed_capacity=int(get_config_value(config, "raffle.live_feed_max_entries", 100)),
        history_capacity=int(get_config_value(config, "raffle.round_history_max", 20)),
    )

    if is_development_network(config):
        coordinator = deploy_mocks()
        subscription_id = coordinator.create_subscription()
        coordinator.fund_subscription(subscription_id, VRF_SUB_FUND_AMOUNT)
        raffle_config = replace(
            build_raffle_config(config, coordinator_address=coordinator.address),
            subscription_id=subscription_id,
        )
        treasury = InMemoryTreasury()
        address = get_config_value(config, "raffle.address") or Account.create().address
        raffle = Raffle(raffle_config, coordinator, treasury, address=address, events=events, clock=clock)
        coordinator.add_consumer(subscription_id, raffle.address)
        coordinator.register_consumer(raffle)
        logger.info("Raffle deployed at %s on %s (subscription %s)", raffle.address, raffle_config.network, subscription_id)
        return Deployment(raffle, coordinator, treasury, events, raffle_config.network, True)

    raffle_config = build_raffle_config(config)
    connection = Web3Connection(config)
    if connection.account is None:
        raise ValueError("blockchain.operator_private_key is required on production networks")
    client = VRFCoordinatorClient(
        connection,
        raffle_config.coordinator_address,
        poll_interval=float(get_config_value(config, "oracle.poll_interval_sec", 5.0)),
        start_block_offset=int(get_config_value(config, "oracle.start_block_offset", 500)),
    )
    client.initialize()
    treasury = Web3Treasury(connection)
    raffle = Raffle(raffle_config, client, treasury, address=connection.account.address, events=events, clock=clock)
    client.register_consumer(raffle)
    logger.info("Raffle bound to operator %s on %s", raffle.address, raffle_config.network)
    return Deployment(raffle, client, treasury, events, raffle_config.network, False, connection)
