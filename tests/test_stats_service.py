import asyncio
import logging
import random
from datetime import date, datetime, timezone

import pytest

from fakes import FailingDirectory, FakeLichessClient, game_record, profile_payload
from lichess_stats.errors import (
    BAD_REQUEST,
    CANCELLED,
    DIRECTORY_UNAVAILABLE,
    INVALID_RANGE,
    NO_DATA,
    NOT_FOUND,
    RATE_LIMITED,
    UPSTREAM_UNAVAILABLE,
    RateLimitedError,
)
from lichess_stats.chart_renderer import PNG_SIGNATURE
from lichess_stats.models import DateWindow
from lichess_stats.outcome import await_outcome
from lichess_stats.player_directory import InMemoryPlayerDirectory
from lichess_stats.services import StatsService, gather_all

NOW = datetime(2024, 1, 31, 18, 0, tzinfo=timezone.utc)
JANUARY = DateWindow.from_dates(date(2024, 1, 1), date(2024, 1, 31))


def _jan(day):
    return datetime(2024, 1, day, 12, 0, tzinfo=timezone.utc)


def _january_games():
    winners = ["white"] * 6 + [None] * 2 + ["black"] * 2
    return [game_record(f"g{i}", winner=w, created=_jan(i + 1)) for i, w in enumerate(winners)]


def _service(client, **kwargs):
    kwargs.setdefault("clock", lambda: NOW)
    return StatsService(client, **kwargs)


@pytest.fixture
def client():
    return FakeLichessClient(
        profiles={"alice": profile_payload("alice", ratings={"blitz": 2000, "bullet": 2100})},
        games={"alice": _january_games()},
    )


class TestPerformance:
    @pytest.mark.asyncio
    async def test_january_example(self, client):
        outcome = await _service(client).performance("alice", window=JANUARY)

        assert outcome.ok
        perf = outcome.value
        assert (perf.wins, perf.draws, perf.losses, perf.total) == (6, 2, 2, 10)
        assert perf.win_rate == pytest.approx(0.6)
        _, user, params = client.calls[0]
        assert user == "alice"
        assert params["since"] == JANUARY.start
        assert params["until"] == JANUARY.end

    @pytest.mark.asyncio
    async def test_default_window_is_last_thirty_days(self, client):
        outcome = await _service(client).performance("alice")

        params = client.calls[0][2]
        assert params["until"] == NOW
        assert (params["until"] - params["since"]).days == 30
        # January 1st noon falls just outside a window starting Jan 1st 18:00
        assert outcome.value.total == 9

    @pytest.mark.asyncio
    async def test_no_games_in_range_is_no_data_with_zero_window(self, client):
        window = DateWindow.from_dates(date(2023, 6, 1), date(2023, 6, 30))

        outcome = await _service(client).performance("alice", window=window)

        assert outcome.is_(NO_DATA)
        assert outcome.value.total == 0
        assert outcome.value.win_rate is None

    @pytest.mark.asyncio
    async def test_reversed_range_never_touches_upstream(self, client):
        window = DateWindow(start=_jan(20), end=_jan(10))

        outcome = await _service(client).performance("alice", window=window)

        assert outcome.is_(INVALID_RANGE)
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_overlong_range_is_invalid(self, client):
        window = DateWindow.from_dates(date(2023, 1, 1), date(2024, 6, 1))
        assert (await _service(client).performance("alice", window=window)).is_(INVALID_RANGE)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("days", [0, -5, 366, 400])
    async def test_day_count_bounds(self, client, days):
        outcome = await _service(client).performance("alice", days=days)
        assert outcome.code == "invalid_range"
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_rate_limit_carries_no_value(self):
        client = FakeLichessClient(
            games={"alice": _january_games()},
            errors={("games", "alice"): RateLimitedError("slow down")},
        )

        outcome = await _service(client).performance("alice", window=JANUARY)

        assert outcome.is_(RATE_LIMITED)
        assert outcome.value is None

    @pytest.mark.asyncio
    async def test_unknown_player(self):
        outcome = await _service(FakeLichessClient()).performance("ghost", window=JANUARY)
        assert outcome.is_(NOT_FOUND)

    @pytest.mark.asyncio
    async def test_malformed_records_are_reported(self):
        games = _january_games() + ["{not json", {"id": "broken", "speed": "blitz"}]
        client = FakeLichessClient(games={"alice": games})

        outcome = await _service(client).performance("alice", window=JANUARY)

        assert outcome.ok
        assert outcome.value.total == 10
        assert outcome.skipped == 2


class TestFavorite:
    @pytest.mark.asyncio
    async def test_tie_goes_to_bullet_with_profile_rating(self):
        games = [game_record(f"b{i}", speed="blitz") for i in range(3)]
        games += [game_record(f"u{i}", speed="bullet") for i in range(3)]
        client = FakeLichessClient(
            profiles={"alice": profile_payload("alice", ratings={"blitz": 2000, "bullet": 2100})},
            games={"alice": games},
        )

        outcome = await _service(client).favorite_control("alice")

        assert outcome.ok
        assert outcome.value.time_control == "bullet"
        assert outcome.value.games_count == 3
        assert outcome.value.rating == 2100
        assert {call[0] for call in client.calls} == {"profile", "games"}

    @pytest.mark.asyncio
    async def test_variant_games_do_not_count(self):
        crazyhouse = [dict(game_record(f"z{i}", speed="blitz"), variant="crazyhouse", perf="crazyhouse") for i in range(3)]
        bullet = [game_record(f"u{i}", speed="bullet") for i in range(2)]
        client = FakeLichessClient(
            profiles={"alice": profile_payload("alice", ratings={"blitz": 2000, "bullet": 2100})},
            games={"alice": crazyhouse + bullet},
        )

        outcome = await _service(client).favorite_control("alice")

        assert outcome.value.time_control == "bullet"
        assert outcome.value.games_count == 2
        assert outcome.skipped == 0

    @pytest.mark.asyncio
    async def test_fetch_budget(self, client):
        await _service(client).favorite_control("alice", fetch=25)
        games_call = next(call for call in client.calls if call[0] == "games")
        assert games_call[2]["max_count"] == 25

    @pytest.mark.asyncio
    async def test_no_games(self):
        client = FakeLichessClient(profiles={"alice": profile_payload("alice")}, games={"alice": []})
        assert (await _service(client).favorite_control("alice")).is_(NO_DATA)

    @pytest.mark.asyncio
    async def test_unknown_player(self):
        assert (await _service(FakeLichessClient()).favorite_control("ghost")).is_(NOT_FOUND)

    @pytest.mark.asyncio
    async def test_failed_profile_cancels_game_stream(self):
        client = FakeLichessClient(games={"alice": _january_games()}, delay=0.5)

        outcome = await _service(client).favorite_control("alice")

        assert outcome.is_(NOT_FOUND)
        assert client.cancelled == ["games:alice"]


class TestOpenings:
    @pytest.mark.asyncio
    async def test_color_and_budget_are_forwarded(self, client):
        outcome = await _service(client).openings("alice", color="White", fetch=20)

        params = client.calls[0][2]
        assert params["color"] == "white"
        assert params["max_count"] == 20
        assert outcome.ok
        assert outcome.value[0].eco == "C50"
        assert outcome.value[0].games_count == 10

    @pytest.mark.asyncio
    async def test_default_budget(self, client):
        await _service(client).openings("alice")
        assert client.calls[0][2]["max_count"] == 100

    @pytest.mark.asyncio
    async def test_top_is_clamped(self):
        games = [game_record(f"g{i}", eco=f"A{i:02d}", opening=f"Opening {i}") for i in range(12)]
        client = FakeLichessClient(games={"alice": games})
        service = _service(client)

        assert len((await service.openings("alice", top=99)).value) == 10
        assert len((await service.openings("alice", top=0)).value) == 1
        assert len((await service.openings("alice")).value) == 5

    @pytest.mark.asyncio
    async def test_unknown_color(self, client):
        outcome = await _service(client).openings("alice", color="green")
        assert outcome.is_(BAD_REQUEST)
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_no_opening_data(self):
        client = FakeLichessClient(games={"alice": [game_record("g1", eco=None, opening=None)]})

        outcome = await _service(client).openings("alice")

        assert outcome.is_(NO_DATA)
        assert outcome.value == []


class TestCompare:
    @pytest.mark.asyncio
    async def test_player_against_itself(self, client):
        outcome = await _service(client).compare("alice", "Alice", window=JANUARY)

        assert outcome.ok
        result = outcome.value
        assert result.first.performance == result.second.performance
        assert result.window == JANUARY

    @pytest.mark.asyncio
    async def test_missing_second_player(self, client):
        outcome = await _service(client).compare("alice", "ghost", window=JANUARY)

        assert outcome.is_(NOT_FOUND)
        assert "second" in outcome.detail
        assert "ghost" in outcome.detail

    @pytest.mark.asyncio
    async def test_default_window(self, client):
        outcome = await _service(client).compare("alice", "alice")
        assert (outcome.value.window.end - outcome.value.window.start).days == 30


class TestRatingChart:
    @pytest.fixture
    def history_client(self):
        return FakeLichessClient(
            profiles={"alice": profile_payload("alice")},
            histories={"alice": [{"name": "Blitz", "points": [[2024, 0, 10, 1500], [2024, 0, 20, 1520]]}]},
        )

    @pytest.mark.asyncio
    async def test_png(self, history_client):
        outcome = await _service(history_client).rating_chart("alice", "Blitz", window=JANUARY)

        assert outcome.ok
        assert outcome.value.startswith(PNG_SIGNATURE)

    @pytest.mark.asyncio
    async def test_never_played_control(self, history_client):
        assert (await _service(history_client).rating_chart("alice", "bullet", window=JANUARY)).is_(NO_DATA)

    @pytest.mark.asyncio
    async def test_nothing_in_window(self, history_client):
        window = DateWindow.from_dates(date(2024, 3, 1), date(2024, 3, 31))
        assert (await _service(history_client).rating_chart("alice", "blitz", window=window)).is_(NO_DATA)

    @pytest.mark.asyncio
    async def test_unknown_control(self, history_client):
        outcome = await _service(history_client).rating_chart("alice", "atomic", window=JANUARY)
        assert outcome.is_(BAD_REQUEST)
        assert history_client.calls == []

    @pytest.mark.asyncio
    async def test_history_points(self, history_client):
        window = DateWindow.from_dates(date(2024, 1, 15), date(2024, 1, 31))

        outcome = await _service(history_client).rating_history("alice", "blitz", window=window)

        assert [p.rating for p in outcome.value] == [1520]


class TestPgnExport:
    @pytest.fixture
    def pgn_client(self):
        texts = [f'[Event "Game {i}"]\n[Site "https://lichess.org/pgn{i:04d}"]\n\n1. e4 e5 *' for i in range(8)]
        return FakeLichessClient(pgns={"alice": texts})

    @pytest.mark.asyncio
    async def test_default_count(self, pgn_client):
        outcome = await _service(pgn_client).export_pgn("alice")

        export = outcome.value
        assert export.count == 5
        assert export.games == 5
        assert export.filename == "alice_last_5.pgn"
        assert export.pgn.count("[Event ") == 5
        assert export.pgn.endswith("\n")
        assert pgn_client.calls[0][2]["fmt"] == "pgn"

    @pytest.mark.asyncio
    async def test_count_is_clamped(self, pgn_client):
        outcome = await _service(pgn_client).export_pgn("alice", count=100)

        assert pgn_client.calls[0][2]["max_count"] == 50
        assert outcome.value.count == 50
        assert outcome.value.games == 8

    @pytest.mark.asyncio
    async def test_no_games(self):
        client = FakeLichessClient(pgns={"alice": []})
        assert (await _service(client).export_pgn("alice")).is_(NO_DATA)


class TestRandomGame:
    @pytest.mark.asyncio
    async def test_picks_a_seed_and_its_latest_blitz_game(self):
        seeds = ("alice", "bob", "carol")
        client = FakeLichessClient(
            games={
                "alice": [game_record("aaaa0001", white="alice", winner="white")],
                "bob": [game_record("bbbb0001", white="bob", winner="white")],
                "carol": [game_record("cccc0001", white="carol", winner="white")],
            }
        )
        expected = random.Random(7).choice(seeds)

        outcome = await _service(client, seeds=seeds, rng=random.Random(7)).random_game()

        assert outcome.ok
        game = outcome.value
        assert game.username == expected
        assert game.game_id == f"{expected[0] * 4}0001"
        assert game.url.endswith(f"/{game.game_id}")
        _, user, params = client.calls[0]
        assert user == expected
        assert params["max_count"] == 1
        assert params["time_control"] == "blitz"

    @pytest.mark.asyncio
    async def test_seed_without_games(self):
        client = FakeLichessClient(games={"alice": []})
        assert (await _service(client, seeds=["alice"]).random_game()).is_(NO_DATA)

    @pytest.mark.asyncio
    async def test_unreadable_record(self):
        client = FakeLichessClient(games={"alice": ["garbage"]})
        assert (await _service(client, seeds=["alice"]).random_game()).is_(UPSTREAM_UNAVAILABLE)


class TestDirectory:
    @pytest.mark.asyncio
    async def test_profile_lookup_refreshes_directory(self, client):
        directory = InMemoryPlayerDirectory()
        service = _service(client, directory=directory)

        outcome = await service.player_info("alice")
        await service.drain()

        assert outcome.ok
        assert directory.get_by_username("ALICE").snapshot == outcome.value

    @pytest.mark.asyncio
    async def test_directory_failure_is_only_logged(self, client, caplog):
        directory = FailingDirectory()
        service = _service(client, directory=directory)

        with caplog.at_level(logging.ERROR):
            outcome = await service.player_info("alice")
            await service.drain()

        assert outcome.ok
        assert directory.attempts == 1
        assert "Player directory upsert failed" in caplog.text

    @pytest.mark.asyncio
    async def test_delete_player(self, client):
        directory = InMemoryPlayerDirectory()
        service = _service(client, directory=directory)
        await service.player_info("alice")
        await service.drain()

        outcome = await service.delete_player("Alice")

        assert outcome.ok
        assert outcome.value.username == "alice"
        assert len(directory) == 0
        assert (await service.delete_player("alice")).is_(NOT_FOUND)

    @pytest.mark.asyncio
    async def test_delete_without_directory(self, client):
        assert (await _service(client).delete_player("alice")).is_(DIRECTORY_UNAVAILABLE)

    @pytest.mark.asyncio
    async def test_delete_with_broken_directory(self, client):
        outcome = await _service(client, directory=FailingDirectory()).delete_player("alice")
        assert outcome.is_(DIRECTORY_UNAVAILABLE)


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancelling_the_request_task(self):
        client = FakeLichessClient(games={"alice": _january_games()}, delay=0.5)
        task = asyncio.create_task(_service(client).performance("alice", window=JANUARY))
        await asyncio.sleep(0.05)

        task.cancel()
        outcome = await await_outcome(task)

        assert outcome.is_(CANCELLED)
        assert client.cancelled == ["games:alice"]
        assert client.closed_streams == 1

    @pytest.mark.asyncio
    async def test_cancelled_upstream_read(self):
        client = FakeLichessClient(
            games={"alice": _january_games()},
            errors={("games", "alice"): asyncio.CancelledError()},
        )

        outcome = await _service(client).performance("alice", window=JANUARY)

        assert outcome.is_(CANCELLED)

    @pytest.mark.asyncio
    async def test_gather_all_cancels_siblings(self):
        state = {"cancelled": False}

        async def slow():
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                state["cancelled"] = True
                raise

        async def boom():
            await asyncio.sleep(0)
            raise RateLimitedError("nope")

        with pytest.raises(RateLimitedError):
            await gather_all(slow(), boom())
        assert state["cancelled"] is True

    @pytest.mark.asyncio
    async def test_concurrent_queries_are_independent(self, client):
        service = _service(client)

        perf, openings, favorite = await asyncio.gather(
            service.performance("alice", window=JANUARY),
            service.openings("alice"),
            service.favorite_control("alice"),
        )

        assert perf.ok and openings.ok and favorite.ok
        assert perf.value.total == 10
