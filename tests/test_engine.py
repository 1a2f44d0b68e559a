import asyncio
import random

import pytest

from star_lottery.engine import GameEngine, winner_amount
from star_lottery.errors import (
    AlreadyJoined,
    GameFull,
    GameNotFound,
    GameNotJoinable,
    InvalidGameConfig,
    NoPlayers,
    PaymentFailed,
    StorageUnavailable,
)
from star_lottery.ledger import InMemoryLedger
from star_lottery.models import GameStatus, Participant, PaymentStatus
from star_lottery.payment import StarsPaymentService
from star_lottery.storage import InMemoryGameStore


# Helper to run async code in sync tests
def async_test(coro):
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
    return loop.run_until_complete(coro)


ALICE = Participant(id="A", name="Alice")
BOB = Participant(id="B", name="Bob")
CAROL = Participant(id="C", name="Carol")


def make_engine(store=None, ledger=None, auto_select_winner=False, seed=7):
    store = store or InMemoryGameStore()
    ledger = ledger or InMemoryLedger(starting_balance=0)
    engine = GameEngine(
        store,
        StarsPaymentService(ledger),
        auto_select_winner=auto_select_winner,
        rng=random.Random(seed),
    )
    return engine, store, ledger


class FlakyPayoutLedger(InMemoryLedger):
    """Ledger whose first payout fails as if the store were down."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.payout_failures = 1

    async def credit(self, user_id, amount, reference=None):
        if self.payout_failures:
            self.payout_failures -= 1
            raise StorageUnavailable("payment rail offline")
        return await super().credit(user_id, amount, reference=reference)


class LosingRaceStore(InMemoryGameStore):
    """Store that rejects the insert as if another join took the last slot."""

    async def insert_player(self, game_id, participant, transaction_id):
        raise GameFull(f"game {game_id} is full")


class TestWinnerAmount:
    def test_floor_of_seventy_percent(self):
        """Winner receives floor(prize_pool * 0.7)."""
        assert winner_amount(10) == 7
        assert winner_amount(2) == 1
        assert winner_amount(1) == 0
        assert winner_amount(0) == 0

    def test_custom_share(self):
        assert winner_amount(9, 0.5) == 4
        assert winner_amount(3, 1.0) == 3


class TestCreateGame:
    def test_create_starts_waiting_with_empty_pool(self):
        engine, _, _ = make_engine()
        game = async_test(engine.create_game(3, 2))
        assert game.status == GameStatus.WAITING
        assert game.prize_pool == 0
        assert game.max_players == 3
        assert game.entry_fee == 2
        assert game.winner_id is None
        assert game.completed_at is None

    @pytest.mark.parametrize("max_players,entry_fee", [(0, 1), (-1, 1), (2, 0), (2, -5)])
    def test_create_rejects_non_positive(self, max_players, entry_fee):
        engine, _, _ = make_engine()
        with pytest.raises(InvalidGameConfig):
            async_test(engine.create_game(max_players, entry_fee))

    def test_current_game_is_latest_waiting(self):
        engine, _, _ = make_engine()

        async def run():
            assert await engine.get_current_game() is None
            await engine.create_game(2, 1)
            second = await engine.create_game(2, 1)
            return second, await engine.get_current_game()

        second, current = async_test(run())
        assert current.id == second.id


class TestJoinGame:
    def test_two_player_scenario(self):
        """A and B join a 2-player game, it fills, the draw pays floor(2 * 0.7)."""
        engine, _, ledger = make_engine()

        async def run():
            await ledger.deposit("A", 5)
            await ledger.deposit("B", 3)
            game = await engine.create_game(2, 1)

            await engine.join_game(game.id, ALICE)
            after_a = await engine.get_game(game.id)
            balance_a = await ledger.get_balance("A")

            await engine.join_game(game.id, BOB)
            after_b = await engine.get_game(game.id)
            balance_b = await ledger.get_balance("B")

            done = await engine.select_winner(game.id)
            balances = {"A": await ledger.get_balance("A"), "B": await ledger.get_balance("B")}
            return after_a, balance_a, after_b, balance_b, done, balances

        after_a, balance_a, after_b, balance_b, done, balances = async_test(run())
        assert balance_a == 4
        assert after_a.status == GameStatus.WAITING
        assert after_a.prize_pool == 1
        assert balance_b == 2
        assert after_b.status == GameStatus.FULL
        assert after_b.prize_pool == 2

        assert done.status == GameStatus.COMPLETED
        assert done.winner_id in ("A", "B")
        assert done.completed_at is not None
        expected = {"A": 4, "B": 2}
        expected[done.winner_id] += 1
        assert balances == expected

    def test_player_record_is_paid(self):
        engine, _, ledger = make_engine()

        async def run():
            await ledger.deposit("A", 1)
            game = await engine.create_game(2, 1)
            player = await engine.join_game(game.id, ALICE)
            return player, game

        player, game = async_test(run())
        assert player.game_id == game.id
        assert player.user_id == "A"
        assert player.display_name == "Alice"
        assert player.payment_status == PaymentStatus.COMPLETED
        assert player.transaction_id

    def test_zero_balance_join_fails_without_mutation(self):
        """A participant with no stars is rejected with PaymentFailed and nothing changes."""
        engine, _, ledger = make_engine()

        async def run():
            game = await engine.create_game(2, 1)
            with pytest.raises(PaymentFailed) as excinfo:
                await engine.join_game(game.id, ALICE)
            return excinfo.value, await engine.get_game(game.id), await engine.get_game_players(game.id)

        error, game, players = async_test(run())
        assert error.reason == PaymentFailed.INSUFFICIENT_BALANCE
        assert "star" in error.user_message
        assert game.prize_pool == 0
        assert players == []
        assert async_test(ledger.get_balance("A")) == 0

    def test_insufficient_balance_message_names_fee(self):
        engine, _, ledger = make_engine()

        async def run():
            await ledger.deposit("A", 2)
            game = await engine.create_game(2, 3)
            with pytest.raises(PaymentFailed) as excinfo:
                await engine.join_game(game.id, ALICE)
            return excinfo.value

        error = async_test(run())
        assert error.user_message == "You need at least 3 stars to join the game!"
        assert error.to_dict()["message"] == error.user_message

    def test_double_join_rejected(self):
        """Joining twice fails with AlreadyJoined and charges only once."""
        engine, _, ledger = make_engine()

        async def run():
            await ledger.deposit("A", 5)
            game = await engine.create_game(3, 1)
            await engine.join_game(game.id, ALICE)
            with pytest.raises(AlreadyJoined):
                await engine.join_game(game.id, ALICE)
            return await engine.get_game(game.id), await ledger.get_balance("A")

        game, balance = async_test(run())
        assert game.prize_pool == 1
        assert balance == 4

    def test_full_game_rejects_join(self):
        engine, _, ledger = make_engine()

        async def run():
            for user in ("A", "B", "C"):
                await ledger.deposit(user, 2)
            game = await engine.create_game(2, 1)
            await engine.join_game(game.id, ALICE)
            await engine.join_game(game.id, BOB)
            with pytest.raises(GameFull):
                await engine.join_game(game.id, CAROL)
            return await engine.get_game_players(game.id), await ledger.get_balance("C")

        players, balance_c = async_test(run())
        assert [p.user_id for p in players] == ["A", "B"]
        assert balance_c == 2

    def test_completed_game_not_joinable(self):
        engine, _, ledger = make_engine()

        async def run():
            await ledger.deposit("A", 2)
            await ledger.deposit("B", 2)
            game = await engine.create_game(3, 1)
            await engine.join_game(game.id, ALICE)
            await engine.select_winner(game.id)
            with pytest.raises(GameNotJoinable):
                await engine.join_game(game.id, BOB)
            return await ledger.get_balance("B")

        assert async_test(run()) == 2

    def test_unknown_game(self):
        engine, _, _ = make_engine()
        with pytest.raises(GameNotFound):
            async_test(engine.join_game("missing", ALICE))

    def test_prize_pool_tracks_paid_players(self):
        """prize_pool == entry_fee * paid players after every join."""
        engine, _, ledger = make_engine()

        async def run():
            game = await engine.create_game(4, 3)
            pools = []
            for n in range(4):
                user = Participant(id=f"u{n}", name=f"User {n}")
                await ledger.deposit(user.id, 3)
                await engine.join_game(game.id, user)
                current = await engine.get_game(game.id)
                players = await engine.get_game_players(game.id)
                paid = [p for p in players if p.payment_status == PaymentStatus.COMPLETED]
                pools.append((current.prize_pool, len(paid) * current.entry_fee))
            return pools

        for pool, expected in async_test(run()):
            assert pool == expected
            assert pool <= 4 * 3

    def test_lost_race_refunds_charge(self):
        """If the store rejects the insert after charging, the fee is refunded."""
        engine, _, ledger = make_engine(store=LosingRaceStore())

        async def run():
            await ledger.deposit("A", 3)
            game = await engine.create_game(2, 1)
            with pytest.raises(GameFull):
                await engine.join_game(game.id, ALICE)
            return await ledger.get_record("A"), await ledger.list_transactions("A")

        record, transactions = async_test(run())
        assert record.stars_balance == 3
        assert record.total_spent == 0
        assert [tx.transaction_type for tx in transactions] == ["deposit", "entry_fee", "refund"]

    def test_concurrent_joins_never_overshoot(self):
        engine, _, ledger = make_engine()

        async def run():
            game = await engine.create_game(2, 1)
            users = [Participant(id=f"u{n}", name=f"User {n}") for n in range(5)]
            for user in users:
                await ledger.deposit(user.id, 1)
            results = await asyncio.gather(
                *(engine.join_game(game.id, user) for user in users), return_exceptions=True
            )
            return results, await engine.get_game(game.id), await engine.get_game_players(game.id)

        results, game, players = async_test(run())
        assert len(players) == 2
        assert game.prize_pool == 2
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(failures) == 3
        assert all(isinstance(r, (GameFull, GameNotJoinable)) for r in failures)

    def test_players_ordered_by_join_time(self):
        engine, _, ledger = make_engine()

        async def run():
            game = await engine.create_game(3, 1)
            for user in (CAROL, ALICE, BOB):
                await ledger.deposit(user.id, 1)
                await engine.join_game(game.id, user)
            return await engine.get_game_players(game.id)

        players = async_test(run())
        assert [p.user_id for p in players] == ["C", "A", "B"]


class TestSelectWinner:
    def test_auto_select_when_full(self):
        engine, _, ledger = make_engine(auto_select_winner=True)

        async def run():
            await ledger.deposit("A", 5)
            await ledger.deposit("B", 5)
            game = await engine.create_game(2, 5)
            await engine.join_game(game.id, ALICE)
            await engine.join_game(game.id, BOB)
            return await engine.get_game(game.id)

        game = async_test(run())
        assert game.status == GameStatus.COMPLETED
        assert game.winner_id in ("A", "B")
        assert game.prize_pool == 10
        winner = async_test(ledger.get_record(game.winner_id))
        assert winner.stars_balance == 7
        assert winner.total_won == 7
        assert winner.games_won == 1

    def test_no_players(self):
        engine, _, _ = make_engine()

        async def run():
            game = await engine.create_game(2, 1)
            await engine.select_winner(game.id)

        with pytest.raises(NoPlayers):
            async_test(run())

    def test_completed_game_unchanged(self):
        engine, _, ledger = make_engine()

        async def run():
            await ledger.deposit("A", 1)
            game = await engine.create_game(1, 1)
            await engine.join_game(game.id, ALICE)
            first = await engine.select_winner(game.id)
            second = await engine.select_winner(game.id)
            return first, second, await ledger.get_record("A")

        first, second, record = async_test(run())
        assert first == second
        assert record.games_won == 1

    def test_payout_failure_keeps_game_open_and_retry_pays_same_winner(self):
        engine, _, ledger = make_engine(ledger=FlakyPayoutLedger(starting_balance=0))

        async def run():
            await ledger.deposit("A", 1)
            await ledger.deposit("B", 1)
            game = await engine.create_game(2, 1)
            await engine.join_game(game.id, ALICE)
            await engine.join_game(game.id, BOB)
            with pytest.raises(PaymentFailed):
                await engine.select_winner(game.id)
            pending = await engine.get_game(game.id)
            done = await engine.select_winner(game.id)
            return pending, done

        pending, done = async_test(run())
        assert pending.status == GameStatus.FULL
        assert pending.winner_id is None
        assert pending.completed_at is None
        assert pending.pending_winner_id in ("A", "B")
        assert done.status == GameStatus.COMPLETED
        assert done.winner_id == pending.pending_winner_id

    def test_failed_payout_on_open_game_shuts_out_late_joiners(self):
        """Once a winner is drawn nobody else can pay into the game."""
        engine, _, ledger = make_engine(ledger=FlakyPayoutLedger(starting_balance=0))

        async def run():
            for user in ("A", "B", "C"):
                await ledger.deposit(user, 1)
            game = await engine.create_game(3, 1)
            await engine.join_game(game.id, ALICE)
            with pytest.raises(PaymentFailed):
                await engine.select_winner(game.id)
            for late in (BOB, CAROL):
                with pytest.raises(GameFull):
                    await engine.join_game(game.id, late)
            done = await engine.select_winner(game.id)
            return done, await engine.get_game_players(game.id), await ledger.get_balance("B")

        done, players, balance_b = async_test(run())
        assert [p.user_id for p in players] == ["A"]
        assert balance_b == 1
        assert done.status == GameStatus.COMPLETED
        assert done.winner_id == "A"
        assert done.prize_pool == 1

    def test_explicit_draw_closes_waiting_game(self):
        engine, _, ledger = make_engine()
        events = []

        async def collect(event):
            events.append(event.type)

        async def run():
            await ledger.deposit("A", 1)
            game = await engine.create_game(3, 1)
            engine.subscribe_to_updates(game.id, collect)
            await engine.join_game(game.id, ALICE)
            return await engine.select_winner(game.id)

        done = async_test(run())
        assert done.winner_id == "A"
        assert events == ["player_joined", "game_full", "winner_pending", "game_completed"]

    def test_winner_is_a_player(self):
        engine, _, ledger = make_engine(seed=3)

        async def run():
            game = await engine.create_game(3, 1)
            for user in (ALICE, BOB, CAROL):
                await ledger.deposit(user.id, 1)
                await engine.join_game(game.id, user)
            done = await engine.select_winner(game.id)
            return done, await engine.get_game_players(game.id)

        done, players = async_test(run())
        assert [p.user_id for p in players].count(done.winner_id) == 1

    def test_draw_is_roughly_uniform(self):
        """Over repeated two-player games each player wins about half the time."""
        engine, _, ledger = make_engine(seed=None)
        engine.rng = random.SystemRandom()
        wins = {"A": 0, "B": 0}

        async def run():
            for _ in range(400):
                game = await engine.create_game(2, 1)
                await ledger.deposit("A", 1)
                await ledger.deposit("B", 1)
                await engine.join_game(game.id, ALICE)
                await engine.join_game(game.id, BOB)
                done = await engine.select_winner(game.id)
                wins[done.winner_id] += 1

        async_test(run())
        assert 120 < wins["A"] < 280
        assert wins["A"] + wins["B"] == 400


class TestSubscriptions:
    def test_events_follow_lifecycle(self):
        engine, _, ledger = make_engine(auto_select_winner=True)
        events = []

        async def collect(event):
            events.append(event.type)

        async def run():
            await ledger.deposit("A", 1)
            await ledger.deposit("B", 1)
            game = await engine.create_game(2, 1)
            subscription = engine.subscribe_to_updates(game.id, collect)
            await engine.join_game(game.id, ALICE)
            await engine.join_game(game.id, BOB)
            subscription.cancel()
            subscription.cancel()
            return subscription

        subscription = async_test(run())
        assert events == [
            "player_joined",
            "player_joined",
            "game_full",
            "winner_pending",
            "game_completed",
        ]
        assert not subscription.active
