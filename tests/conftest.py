import pytest
from eth_account import Account

from raffle.deploy import deploy_raffle
from raffle.lottery.event_manager import EventBus

ENTRANCE_FEE = 10
INTERVAL = 30
STARTING_FUNDS = 100


class FakeClock:
    """Deterministic stand-in for block time."""

    def __init__(self, start: int = 1_700_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def dev_config():
    return {
        "blockchain": {"chain_id": 31337},
        "raffle": {"entrance_fee": ENTRANCE_FEE, "interval": INTERVAL},
        "operator": {"check_interval_sec": 0.01, "stuck_after_sec": 60},
    }


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def deployment(dev_config, clock, events):
    return deploy_raffle(dev_config, events=events, clock=clock)


@pytest.fixture
def raffle(deployment):
    return deployment.raffle


@pytest.fixture
def coordinator(deployment):
    return deployment.oracle


@pytest.fixture
def treasury(deployment):
    return deployment.treasury


@pytest.fixture
def players(treasury):
    accounts = [Account.create().address for _ in range(4)]
    for account in accounts:
        treasury.fund(account, STARTING_FUNDS)
    return accounts


@pytest.fixture
def player(players):
    return players[0]


@pytest.fixture
def ready_raffle(raffle, player, clock):
    """One entry in, interval elapsed: a draw is due."""
    raffle.join(ENTRANCE_FEE, player)
    clock.advance(INTERVAL + 1)
    return raffle
