import pytest
from eth_account import Account

from raffle.blockchain.client import VRFCoordinatorClient, Web3Connection
from raffle.blockchain.oracle import MockVRFCoordinator, derive_random_words
from raffle.deploy import VRF_SUB_FUND_AMOUNT, deploy_raffle
from raffle.lottery.errors import DisbursementFailed, UnknownRequest
from raffle.lottery.treasury import InMemoryTreasury


def test_development_deployment_provisions_mock(deployment, raffle, coordinator):
    assert deployment.development is True
    assert isinstance(coordinator, MockVRFCoordinator)
    assert isinstance(deployment.treasury, InMemoryTreasury)
    assert raffle.config.coordinator_address == coordinator.address
    assert raffle.config.subscription_id == 1
    assert coordinator.get_subscription_balance(1) == VRF_SUB_FUND_AMOUNT


def test_configured_raffle_address_is_used(dev_config):
    address = Account.create().address
    dev_config["raffle"]["address"] = address.lower()
    assert deploy_raffle(dev_config).raffle.address == address


def test_production_requires_operator_key():
    with pytest.raises(ValueError, match="operator_private_key"):
        deploy_raffle({"blockchain": {"chain_id": 11155111}})


class StubConsumer:
    def __init__(self, address, outcomes):
        self.address = address
        self.outcomes = list(outcomes)
        self.calls = []

    def resolve(self, request_id, random_words, caller):
        self.calls.append((request_id, list(random_words), caller))
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture
def client():
    account = Account.create()
    connection = Web3Connection({"blockchain": {"chain_id": 11155111, "operator_private_key": account.key}})
    return VRFCoordinatorClient(connection, "0x8103B0A8A00be2DDC778e6e7eaa21791Cd364625")


def test_poll_delivers_derived_words_and_retries_failures(client, monkeypatch):
    consumer = StubConsumer(client._conn.account.address, [DisbursementFailed("0xabc", 40), "0xabc"])
    client.register_consumer(consumer)
    client._outstanding[5] = {"consumer": consumer.address, "num_words": 1}
    batches = [[{"requestId": 5, "outputSeed": 99, "payment": 0, "success": True}], []]
    monkeypatch.setattr(client, "_fetch_fulfillments", lambda: batches.pop(0))

    assert client.poll_fulfillments() == 0
    assert 5 in client._outstanding
    assert client.poll_fulfillments() == 1
    assert 5 not in client._outstanding
    assert consumer.calls[0] == (5, derive_random_words(99, 1), client.address)
    assert len(consumer.calls) == 2


def test_poll_drops_requests_the_consumer_no_longer_waits_for(client, monkeypatch):
    consumer = StubConsumer(client._conn.account.address, [UnknownRequest(5, None)])
    client.register_consumer(consumer)
    client._outstanding[5] = {"consumer": consumer.address, "num_words": 1}
    monkeypatch.setattr(
        client, "_fetch_fulfillments", lambda: [{"requestId": 5, "outputSeed": 1, "payment": 0, "success": True}]
    )

    assert client.poll_fulfillments() == 0
    assert client._outstanding == {}


def test_poll_ignores_foreign_requests(client, monkeypatch):
    monkeypatch.setattr(
        client, "_fetch_fulfillments", lambda: [{"requestId": 8, "outputSeed": 1, "payment": 0, "success": True}]
    )
    assert client.poll_fulfillments() == 0
