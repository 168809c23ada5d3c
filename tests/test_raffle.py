import pytest
from eth_account import Account

from raffle.blockchain.oracle import NonexistentRequest
from raffle.lottery.errors import (
    DisbursementFailed,
    InsufficientEntry,
    OracleRequestFailed,
    RoundClosed,
    UnauthorizedFulfillment,
    UnknownRequest,
    UpkeepNotNeeded,
)
from raffle.lottery.event_manager import DRAW_TRIGGERED, ENTRY_RECORDED, WINNER_RESOLVED
from raffle.lottery.models import RaffleConfig, RoundState
from raffle.lottery.raffle import Raffle
from raffle.lottery.treasury import InsufficientFunds

from conftest import ENTRANCE_FEE, INTERVAL, STARTING_FUNDS


def _enter_all(raffle, players):
    for account in players:
        raffle.join(ENTRANCE_FEE, account)


class TestConstructor:
    def test_initializes_the_raffle_correctly(self, raffle, clock):
        assert raffle.state == RoundState.OPEN
        assert raffle.entrance_fee == ENTRANCE_FEE
        assert raffle.interval == INTERVAL
        assert raffle.number_of_players == 0
        assert raffle.balance == 0
        assert raffle.recent_winner is None
        assert raffle.last_timestamp == clock.now
        assert raffle.num_words == 1
        assert raffle.request_confirmations == 3
        assert raffle.round_number == 1

    @pytest.mark.parametrize("fee, interval", [(0, 30), (-1, 30), (10, 0), (10, -5)])
    def test_rejects_non_positive_parameters(self, fee, interval):
        with pytest.raises(ValueError):
            RaffleConfig(
                entrance_fee=fee,
                interval=interval,
                key_hash="0x00",
                subscription_id=1,
                callback_gas_limit=500000,
                coordinator_address=Account.create().address,
            )


class TestJoin:
    def test_reverts_when_you_dont_pay_enough(self, raffle, player, treasury):
        with pytest.raises(InsufficientEntry) as excinfo:
            raffle.join(ENTRANCE_FEE - 1, player)
        assert excinfo.value.entrance_fee == ENTRANCE_FEE
        assert raffle.number_of_players == 0
        assert raffle.balance == 0
        assert treasury.balance_of(player) == STARTING_FUNDS

    def test_records_players_when_they_enter(self, raffle, player):
        index = raffle.join(ENTRANCE_FEE, player)
        assert index == 0
        assert raffle.get_player(0) == player
        assert raffle.number_of_players == 1
        assert raffle.balance == ENTRANCE_FEE

    def test_overpayment_is_kept_in_full(self, raffle, player, treasury):
        raffle.join(ENTRANCE_FEE * 3, player)
        assert raffle.balance == ENTRANCE_FEE * 3
        assert treasury.balance_of(player) == STARTING_FUNDS - ENTRANCE_FEE * 3

    def test_same_player_may_enter_repeatedly(self, raffle, player):
        assert raffle.join(ENTRANCE_FEE, player) == 0
        assert raffle.join(ENTRANCE_FEE, player) == 1
        assert raffle.get_players() == [player, player]
        assert raffle.get_player_summary() == {player: ENTRANCE_FEE * 2}

    def test_emits_event_on_enter(self, raffle, player, events):
        received = []
        events.add_listener(ENTRY_RECORDED, received.append)
        raffle.join(ENTRANCE_FEE, player)
        assert received == [{"player": player, "amount": ENTRANCE_FEE, "index": 0, "round": 1}]

    def test_doesnt_allow_entrance_while_calculating(self, ready_raffle, players):
        ready_raffle.trigger_draw()
        assert ready_raffle.state == RoundState.CALCULATING
        with pytest.raises(RoundClosed):
            ready_raffle.join(ENTRANCE_FEE, players[1])
        assert ready_raffle.number_of_players == 1

    def test_fee_is_checked_before_state(self, ready_raffle, players):
        ready_raffle.trigger_draw()
        with pytest.raises(InsufficientEntry):
            ready_raffle.join(0, players[1])

    def test_unfunded_player_is_not_recorded(self, raffle):
        stranger = Account.create().address
        with pytest.raises(InsufficientFunds):
            raffle.join(ENTRANCE_FEE, stranger)
        assert raffle.number_of_players == 0
        assert raffle.balance == 0


class TestCheckUpkeep:
    def test_returns_false_if_nobody_entered(self, raffle, clock):
        clock.advance(INTERVAL + 1)
        needed, perform_data = raffle.check_upkeep(b"")
        assert needed is False
        assert perform_data == b""
        check = raffle.evaluate()
        assert check.has_players is False
        assert check.has_balance is False
        assert check.time_passed is True

    def test_returns_false_if_raffle_isnt_open(self, ready_raffle):
        ready_raffle.trigger_draw()
        check = ready_raffle.evaluate()
        assert check.is_open is False
        assert check.upkeep_needed is False

    def test_returns_false_if_not_enough_time_has_passed(self, raffle, player, clock):
        raffle.join(ENTRANCE_FEE, player)
        clock.advance(INTERVAL - 5)
        check = raffle.evaluate()
        assert check.time_passed is False
        assert check.time_remaining == 5
        assert raffle.check_upkeep()[0] is False

    def test_returns_true_at_exactly_the_interval(self, raffle, player, clock):
        raffle.join(ENTRANCE_FEE, player)
        clock.advance(INTERVAL)
        assert raffle.check_upkeep()[0] is True

    def test_is_read_only(self, ready_raffle):
        before = ready_raffle.evaluate()
        for _ in range(3):
            ready_raffle.evaluate()
        assert ready_raffle.evaluate() == before
        assert ready_raffle.state == RoundState.OPEN


class TestTriggerDraw:
    def test_reverts_when_upkeep_is_not_needed(self, raffle, player, clock):
        raffle.join(ENTRANCE_FEE, player)
        with pytest.raises(UpkeepNotNeeded) as excinfo:
            raffle.trigger_draw()
        check = excinfo.value.check
        assert check.balance == ENTRANCE_FEE
        assert check.player_count == 1
        assert check.state == RoundState.OPEN
        assert check.time_remaining == INTERVAL
        assert raffle.state == RoundState.OPEN
        assert raffle.pending_request_id is None

    def test_updates_state_and_requests_randomness(self, ready_raffle, coordinator, events):
        triggered = []
        events.add_listener(DRAW_TRIGGERED, triggered.append)
        request_id = ready_raffle.perform_upkeep(b"")
        assert request_id == 1
        assert ready_raffle.state == RoundState.CALCULATING
        assert ready_raffle.pending_request_id == request_id
        assert coordinator.pending_requests() == [request_id]
        assert triggered == [{"requestId": request_id, "round": 1}]

    def test_second_trigger_is_rejected(self, ready_raffle, coordinator):
        ready_raffle.trigger_draw()
        with pytest.raises(UpkeepNotNeeded):
            ready_raffle.trigger_draw()
        assert coordinator.pending_requests() == [1]

    def test_oracle_refusal_keeps_round_open(self, coordinator, treasury, player, clock):
        config = RaffleConfig(
            entrance_fee=ENTRANCE_FEE,
            interval=INTERVAL,
            key_hash="0x00",
            subscription_id=999,
            callback_gas_limit=500000,
            coordinator_address=coordinator.address,
        )
        raffle = Raffle(config, coordinator, treasury, address=Account.create().address, clock=clock)
        raffle.join(ENTRANCE_FEE, player)
        clock.advance(INTERVAL + 1)
        with pytest.raises(OracleRequestFailed):
            raffle.trigger_draw()
        assert raffle.state == RoundState.OPEN
        assert raffle.pending_request_id is None
        assert raffle.number_of_players == 1


class TestResolve:
    def test_picks_a_winner_resets_and_sends_money(self, raffle, players, coordinator, treasury, clock, events):
        _enter_all(raffle, players)
        clock.advance(INTERVAL + 1)
        request_id = raffle.trigger_draw()
        picked = []
        events.add_listener(WINNER_RESOLVED, picked.append)
        clock.advance(12)

        winner = coordinator.fulfill_random_words(request_id, raffle.address, [7])

        assert winner == players[3]
        assert raffle.recent_winner == players[3]
        assert raffle.state == RoundState.OPEN
        assert raffle.number_of_players == 0
        assert raffle.balance == 0
        assert raffle.last_timestamp == clock.now
        assert raffle.pending_request_id is None
        assert treasury.balance_of(players[3]) == STARTING_FUNDS + 3 * ENTRANCE_FEE
        for loser in players[:3]:
            assert treasury.balance_of(loser) == STARTING_FUNDS - ENTRANCE_FEE
        assert treasury.reserve == 0
        assert picked == [{"winner": players[3], "amount": 4 * ENTRANCE_FEE, "requestId": request_id, "round": 1}]

    def test_replayed_fulfillment_is_rejected(self, raffle, players, coordinator, clock):
        _enter_all(raffle, players)
        clock.advance(INTERVAL + 1)
        request_id = raffle.trigger_draw()
        coordinator.fulfill_random_words(request_id, raffle.address, [7])

        with pytest.raises(UnknownRequest):
            raffle.resolve(request_id, [7], coordinator.address)
        with pytest.raises(NonexistentRequest):
            coordinator.fulfill_random_words(request_id, raffle.address, [7])
        assert raffle.recent_winner == players[3]

    def test_can_only_be_called_after_trigger(self, raffle, players, coordinator):
        _enter_all(raffle, players)
        for request_id in (0, 1):
            with pytest.raises(NonexistentRequest):
                coordinator.fulfill_random_words(request_id, raffle.address)
            with pytest.raises(UnknownRequest):
                raffle.resolve(request_id, [7], coordinator.address)
        assert raffle.number_of_players == 4

    def test_rejects_mismatched_request_id(self, ready_raffle, coordinator):
        request_id = ready_raffle.trigger_draw()
        with pytest.raises(UnknownRequest) as excinfo:
            ready_raffle.resolve(request_id + 1, [7], coordinator.address)
        assert excinfo.value.pending == request_id
        assert ready_raffle.state == RoundState.CALCULATING

    def test_rejects_fulfillment_from_anyone_but_the_coordinator(self, ready_raffle, player):
        request_id = ready_raffle.trigger_draw()
        with pytest.raises(UnauthorizedFulfillment):
            ready_raffle.resolve(request_id, [7], Account.create().address)
        assert ready_raffle.state == RoundState.CALCULATING
        assert ready_raffle.pending_request_id == request_id
        assert ready_raffle.get_players() == [player]

    def test_rejects_empty_random_words(self, ready_raffle, coordinator):
        request_id = ready_raffle.trigger_draw()
        with pytest.raises(ValueError):
            ready_raffle.resolve(request_id, [], coordinator.address)
        assert ready_raffle.state == RoundState.CALCULATING

    def test_failed_payout_rolls_back_and_can_be_retried(self, raffle, players, coordinator, treasury, clock):
        _enter_all(raffle, players)
        clock.advance(INTERVAL + 1)
        request_id = raffle.trigger_draw()
        last_timestamp = raffle.last_timestamp
        subscription_balance = coordinator.get_subscription_balance(raffle.config.subscription_id)
        treasury.reject_payments_to(players[3])

        with pytest.raises(DisbursementFailed) as excinfo:
            coordinator.fulfill_random_words(request_id, raffle.address, [7])

        assert excinfo.value.winner == players[3]
        assert excinfo.value.amount == 4 * ENTRANCE_FEE
        assert raffle.state == RoundState.CALCULATING
        assert raffle.pending_request_id == request_id
        assert raffle.get_players() == players
        assert raffle.balance == 4 * ENTRANCE_FEE
        assert raffle.last_timestamp == last_timestamp
        assert raffle.recent_winner is None
        assert treasury.reserve == 4 * ENTRANCE_FEE
        assert coordinator.pending_requests() == [request_id]
        assert coordinator.get_subscription_balance(raffle.config.subscription_id) == subscription_balance

        treasury.reject_payments_to(players[3], rejecting=False)
        assert coordinator.fulfill_random_words(request_id, raffle.address, [7]) == players[3]
        assert raffle.state == RoundState.OPEN
        assert treasury.balance_of(players[3]) == STARTING_FUNDS + 3 * ENTRANCE_FEE

    def test_old_indexes_are_gone_after_reset(self, ready_raffle, coordinator):
        request_id = ready_raffle.trigger_draw()
        coordinator.fulfill_random_words(request_id, ready_raffle.address, [0])
        with pytest.raises(IndexError):
            ready_raffle.get_player(0)

    def test_next_round_starts_fresh(self, raffle, players, coordinator, clock, events):
        _enter_all(raffle, players)
        clock.advance(INTERVAL + 1)
        coordinator.fulfill_random_words(raffle.trigger_draw(), raffle.address, [1])

        assert raffle.round_number == 2
        assert raffle.check_upkeep()[0] is False
        assert raffle.join(ENTRANCE_FEE, players[2]) == 0
        clock.advance(INTERVAL)
        second_request = raffle.trigger_draw()
        assert second_request == 2
        assert coordinator.fulfill_random_words(second_request, raffle.address) == players[2]

        history = events.get_round_history()
        assert [snapshot.round_number for snapshot in history] == [1, 2]
        assert history[0].winner == players[1]
        assert history[0].prize == 4 * ENTRANCE_FEE
        assert history[0].player_count == 4

    def test_derived_words_select_a_ledger_member(self, raffle, players, coordinator, clock):
        _enter_all(raffle, players)
        clock.advance(INTERVAL + 1)
        winner = coordinator.fulfill_random_words(raffle.trigger_draw(), raffle.address)
        assert winner in players
