import asyncio
import logging

import pytest

from raffle.lottery.models import RoundState
from raffle.lottery.operator import RaffleOperator

from conftest import ENTRANCE_FEE, INTERVAL


@pytest.fixture
def operator(raffle, dev_config):
    return RaffleOperator(raffle, dev_config)


async def test_run_once_triggers_when_due(operator, ready_raffle):
    request_id = await operator.run_once()
    assert request_id == 1
    assert ready_raffle.state == RoundState.CALCULATING
    assert operator.status.draws_triggered == 1
    assert operator.status.last_trigger_request_id == 1
    assert operator.status.last_check is not None


async def test_run_once_waits_for_interval(operator, raffle, player):
    raffle.join(ENTRANCE_FEE, player)
    assert await operator.run_once() is None
    assert raffle.state == RoundState.OPEN
    assert operator.status.draws_triggered == 0


async def test_run_once_does_nothing_on_empty_round(operator, raffle, clock):
    clock.advance(INTERVAL * 10)
    assert await operator.run_once() is None
    assert raffle.state == RoundState.OPEN


async def test_long_pending_request_is_reported(operator, ready_raffle, clock, caplog):
    await operator.run_once()
    clock.advance(61)
    with caplog.at_level(logging.WARNING, logger="raffle.lottery.operator"):
        assert await operator.run_once() is None
    assert "waited 61s" in caplog.text
    assert ready_raffle.state == RoundState.CALCULATING


async def test_loop_triggers_and_tracks_winner(operator, ready_raffle, coordinator):
    await operator.initialize()
    await operator.start()
    for _ in range(100):
        if ready_raffle.pending_request_id is not None:
            break
        await asyncio.sleep(0.01)
    request_id = ready_raffle.pending_request_id
    assert request_id is not None

    winner = coordinator.fulfill_random_words(request_id, ready_raffle.address, [0])
    assert operator.status.last_winner == winner

    status = operator.get_status()
    assert status["status"] == "running"
    assert status["round"] == 2
    assert status["state"] == "OPEN"

    await operator.stop()
    assert operator.get_status()["status"] == "stopped"
