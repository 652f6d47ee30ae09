from datetime import timedelta

from arena.models.match_model import EliminationReason, MatchStatus, PlayerStatus
from arena.services.resolver import (
    determine_winner,
    fastest_first,
    partition_round,
    resolve_round,
    select_eliminations,
    slowest_first,
)
from tests.helpers import START, make_match, make_player, players_of, wallet

LATER = START + timedelta(seconds=10)


class TestOrdering:

    def test_ties_break_by_address(self):
        a = make_player("A", 1, 500)
        b = make_player("B", 1, 500)
        assert [p.address for p in slowest_first([b, a])] == [a.address, b.address]
        assert [p.address for p in fastest_first([b, a])] == [a.address, b.address]

    def test_missing_time_ranks_slowest(self):
        a = make_player("A", 1, None)
        b = make_player("B", 1, 2000)
        assert slowest_first([b, a])[0] is a
        assert fastest_first([a, b])[0] is b


class TestEliminations:

    def test_partition_ignores_bots_and_eliminated(self):
        bot = make_player("D", 1, 10, is_bot=True)
        gone = make_player("E", 1, 10, status=PlayerStatus.ELIMINATED)
        a = make_player("A", 1, 300)
        b = make_player("B", 0)
        match = make_match(players=players_of(a, b, bot, gone))
        acted, idle = partition_round(match)
        assert [p.address for p in acted] == [a.address]
        assert [p.address for p in idle] == [b.address]

    def test_two_actors_eliminate_only_the_slowest(self):
        match = make_match(players=players_of(
            make_player("A", 1, 300),
            make_player("B", 1, 900),
            make_player("C", 0),
        ))
        chosen = select_eliminations(match)
        assert [(p.address, reason) for p, reason in chosen] == [(wallet("B"), EliminationReason.SLOWEST_RESPONSE)]

    def test_single_actor_eliminates_all_idle(self):
        match = make_match(players=players_of(
            make_player("A", 1, 300),
            make_player("B", 0),
            make_player("C", 0),
        ))
        chosen = select_eliminations(match)
        assert {p.address for p, _ in chosen} == {wallet("B"), wallet("C")}
        assert all(reason == EliminationReason.NO_ACTION for _, reason in chosen)

    def test_single_actor_alone_eliminates_nobody(self):
        match = make_match(players=players_of(make_player("A", 1, 300)))
        assert select_eliminations(match) == []


class TestResolveRound:

    def test_round_advances_with_survivors(self):
        match = make_match(players=players_of(
            make_player("A", 1, 300),
            make_player("B", 1, 400),
            make_player("C", 1, 900),
        ))
        outcome = resolve_round(match, LATER)

        assert outcome.eliminated == [wallet("C")]
        assert not outcome.completed
        assert match.round == 2
        assert match.round_started_at == LATER
        assert match.status == MatchStatus.IN_PROGRESS
        assert match.players[wallet("A")].response_time is None
        eliminated = match.players[wallet("C")]
        assert eliminated.status == PlayerStatus.ELIMINATED
        assert eliminated.elimination_round == 1
        assert eliminated.response_time == 900

    def test_idle_players_survive_when_two_acted(self):
        match = make_match(players=players_of(
            make_player("A", 1, 300),
            make_player("B", 1, 400),
            make_player("C", 0),
        ))
        resolve_round(match, LATER)
        assert match.players[wallet("C")].is_alive
        assert match.players[wallet("B")].status == PlayerStatus.ELIMINATED
        assert match.round == 2

    def test_last_survivor_wins(self):
        match = make_match(round_number=3, players=players_of(
            make_player("A", 3, 250),
            make_player("B", 3, 700),
            make_player("C", 1, 900, status=PlayerStatus.ELIMINATED, elimination_round=1),
            make_player("D", 2, 800, status=PlayerStatus.ELIMINATED, elimination_round=2),
        ))
        outcome = resolve_round(match, LATER)

        assert outcome.completed
        assert outcome.winner == wallet("A")
        assert match.status == MatchStatus.COMPLETED
        assert match.winner == wallet("A")
        assert match.completed_at == LATER
        stats = match.final_stats
        assert stats.total_players == 4
        assert stats.total_rounds == 3
        assert stats.winner_response_time == 250
        assert [e.address for e in stats.elimination_order] == [wallet("B"), wallet("D"), wallet("C")]

    def test_nobody_acted_falls_back_to_history(self):
        early = START - timedelta(minutes=1)
        match = make_match(round_number=2, players=players_of(
            make_player("A", 1, 600, joined_at=START),
            make_player("B", 1, 400, joined_at=START),
            make_player("C", 0, None, joined_at=early),
        ))
        outcome = resolve_round(match, LATER)

        assert outcome.completed
        assert match.winner == wallet("B")
        winner = match.players[wallet("B")]
        assert winner.status == PlayerStatus.ALIVE
        assert winner.elimination_reason is None
        assert match.players[wallet("A")].elimination_reason == EliminationReason.NO_ACTION

    def test_history_fallback_uses_join_time_last(self):
        early = START - timedelta(minutes=1)
        match = make_match(round_number=2, players=players_of(
            make_player("A", 1, 500, joined_at=START),
            make_player("B", 1, 500, joined_at=early),
        ))
        resolve_round(match, LATER)
        assert match.winner == wallet("B")

    def test_determine_winner_prefers_final_round_actor(self):
        match = make_match(round_number=2, players=players_of(
            make_player("A", 2, 900, status=PlayerStatus.ELIMINATED),
            make_player("B", 1, 100, status=PlayerStatus.ELIMINATED),
        ))
        assert determine_winner(match).address == wallet("A")

    def test_no_players_marks_ended(self):
        match = make_match(players={})
        outcome = resolve_round(match, LATER)
        assert outcome.ended
        assert match.status == MatchStatus.ENDED
        assert match.winner is None

    def test_resolution_is_deterministic(self):
        def build():
            return make_match(players=players_of(
                make_player("C", 1, 500),
                make_player("A", 1, 500),
                make_player("B", 1, 500),
            ))

        first, second = build(), build()
        assert resolve_round(first, LATER) == resolve_round(second, LATER)
        assert first.to_document() == second.to_document()
        assert first.players[wallet("A")].status == PlayerStatus.ELIMINATED
