"""Tests for dedup.validator module."""

import copy
import json

import pytest

from dedup import WINNER_UNKNOWN
from dedup.validator import (
    INVALID_DECK_LENGTH,
    MALFORMED_SHAPE,
    MISSING_PLAYER_FIELD,
    UNPARSABLE_TIMESTAMP,
    validate_line,
    validate_match,
)


RAW = {
    'date': '2024-09-23T16:04:46Z',
    'game': 'pathOfLegend',
    'mode': 'Ranked1v1',
    'round': 0,
    'type': 'PvP',
    'winner': 0,
    'players': [
        {'utag': '#BBB', 'ctag': '#CLAN2', 'trophies': 7450, 'exp': 48, 'league': 7,
         'bestleague': 7, 'deck': '0f1e2d3c4b5a6978', 'evo': '', 'tower': '159000001',
         'strength': 13.9, 'crown': 1, 'elixir': 3.9, 'touch': 25, 'score': 80},
        {'utag': '#AAA', 'ctag': '#CLAN1', 'trophies': 7500, 'exp': 50, 'league': 7,
         'bestleague': 8, 'deck': '1a2b3c4d5e6f7081', 'evo': '1a', 'tower': '159000000',
         'strength': 14.5, 'crown': 3, 'elixir': 3.4, 'touch': 22, 'score': 100},
    ],
}


def _raw(**kwargs) -> dict:
    """Copy of RAW with top-level overrides."""
    raw = copy.deepcopy(RAW)
    raw.update(kwargs)
    return raw


def _raw_player(index: int, **kwargs) -> dict:
    """Copy of RAW with overrides on one player."""
    raw = copy.deepcopy(RAW)
    raw['players'][index].update(kwargs)
    return raw


class TestValidMatch:
    """Tests for accepted reports."""

    def test_accepts_full_report(self):
        result = validate_match(RAW)
        assert result.ok
        assert result.reason is None

    def test_players_canonicalized(self):
        record = validate_match(RAW).record
        assert [p.tag for p in record.players] == ['#AAA', '#BBB']

    def test_fields_mapped(self):
        record = validate_match(RAW).record
        aaa = record.players[0]
        assert record.game_id == 'pathOfLegend'
        assert record.mode == 'Ranked1v1'
        assert record.type == 'PvP'
        assert record.winner_slot == 0
        assert aaa.clan_tag == '#CLAN1'
        assert aaa.experience == 50
        assert aaa.best_league == 8
        assert aaa.evolution_cards == '1a'
        assert aaa.tower_skin == '159000000'
        assert aaa.crowns_taken == 3
        assert aaa.elixir_average == 3.4
        assert aaa.card_touches == 22

    def test_origin_attached(self):
        record = validate_match(RAW, origin=('a.jsonl', 7)).record
        assert record.origin == ('a.jsonl', 7)

    def test_any_deck_content_of_length_16(self):
        raw = _raw_player(0, deck='zzzzzzzzzzzzzzzz')
        assert validate_match(raw).ok


class TestOptionalFields:
    """Absent optional fields fall back to defaults."""

    def test_minimal_players(self):
        raw = _raw(players=[
            {'utag': '#AAA', 'deck': '1a2b3c4d5e6f7081', 'tower': '1'},
            {'utag': '#BBB', 'deck': '0f1e2d3c4b5a6978', 'tower': '2'},
        ])
        record = validate_match(raw).record
        p = record.players[0]
        assert p.clan_tag == ''
        assert p.trophies == 0
        assert p.evolution_cards == ''
        assert p.strength == 0.0
        assert p.score == 0

    def test_null_values_defaulted(self):
        raw = _raw_player(0, trophies=None, evo=None, elixir=None)
        p = validate_match(raw).record.players[1]
        assert p.tag == '#BBB'
        assert p.trophies == 0
        assert p.evolution_cards == ''
        assert p.elixir_average == 0.0

    def test_non_numeric_defaulted(self):
        raw = _raw_player(1, trophies='lots', strength='strong')
        p = validate_match(raw).record.players[0]
        assert p.trophies == 0
        assert p.strength == 0.0

    def test_numeric_strings_coerced(self):
        raw = _raw_player(1, trophies='7500', crown=2.0)
        p = validate_match(raw).record.players[0]
        assert p.trophies == 7500
        assert p.crowns_taken == 2

    @pytest.mark.parametrize('value', ['nan', 'inf', '-Infinity', '1e999'])
    def test_non_finite_strings_defaulted(self, value):
        raw = _raw_player(1, strength=value, elixir=value, trophies=value)
        p = validate_match(raw).record.players[0]
        assert p.strength == 0.0
        assert p.elixir_average == 0.0
        assert p.trophies == 0

    def test_non_finite_json_literals_defaulted(self):
        # The json module accepts NaN and Infinity as bare literals
        line = json.dumps(_raw_player(1, strength=float('nan'), elixir=float('inf')))
        assert 'NaN' in line
        p = validate_line(line).record.players[0]
        assert p.strength == 0.0
        assert p.elixir_average == 0.0

    def test_missing_round_defaults_to_zero(self):
        raw = _raw()
        del raw['round']
        assert validate_match(raw).record.round == 0

    @pytest.mark.parametrize('winner', [None, 2, -5, 'x'])
    def test_unknown_winner(self, winner):
        assert validate_match(_raw(winner=winner)).record.winner_slot == WINNER_UNKNOWN


class TestMalformedShape:
    """Check 1: top-level shape."""

    @pytest.mark.parametrize('value', [None, 42, 'text', [RAW]])
    def test_not_an_object(self, value):
        assert validate_match(value).reason == MALFORMED_SHAPE

    def test_missing_players(self):
        raw = _raw()
        del raw['players']
        assert validate_match(raw).reason == MALFORMED_SHAPE

    def test_wrong_player_count(self):
        raw = _raw()
        raw['players'] = raw['players'][:1]
        assert validate_match(raw).reason == MALFORMED_SHAPE

    def test_players_not_a_list(self):
        assert validate_match(_raw(players={'a': 1})).reason == MALFORMED_SHAPE

    def test_missing_date(self):
        raw = _raw()
        del raw['date']
        assert validate_match(raw).reason == MALFORMED_SHAPE

    @pytest.mark.parametrize('name', ['game', 'mode', 'type'])
    def test_missing_required_match_field(self, name):
        raw = _raw()
        del raw[name]
        assert validate_match(raw).reason == MALFORMED_SHAPE

    def test_shape_checked_before_players(self):
        raw = _raw_player(0, deck='short')
        del raw['game']
        assert validate_match(raw).reason == MALFORMED_SHAPE


class TestUnparsableTimestamp:
    """A present but invalid date."""

    @pytest.mark.parametrize('date', ['23/09/2024 17:08', 'soon', '2024-09-23T16:04:46', 1727107486])
    def test_bad_date(self, date):
        assert validate_match(_raw(date=date)).reason == UNPARSABLE_TIMESTAMP


class TestMissingPlayerField:
    """Check 2: player identity fields."""

    def test_missing_tag(self):
        raw = _raw()
        del raw['players'][0]['utag']
        assert validate_match(raw).reason == MISSING_PLAYER_FIELD

    def test_empty_tag(self):
        assert validate_match(_raw_player(1, utag='  ')).reason == MISSING_PLAYER_FIELD

    def test_missing_deck(self):
        raw = _raw()
        del raw['players'][1]['deck']
        assert validate_match(raw).reason == MISSING_PLAYER_FIELD

    def test_empty_tower(self):
        assert validate_match(_raw_player(0, tower='')).reason == MISSING_PLAYER_FIELD

    def test_player_not_an_object(self):
        raw = _raw()
        raw['players'][0] = '#AAA'
        assert validate_match(raw).reason == MISSING_PLAYER_FIELD

    def test_missing_field_wins_over_deck_length(self):
        raw = _raw_player(0, deck='short')
        del raw['players'][1]['utag']
        assert validate_match(raw).reason == MISSING_PLAYER_FIELD


class TestInvalidDeckLength:
    """Check 3: deck length."""

    @pytest.mark.parametrize('deck', ['1a2b3c4d5e6f708', '1a2b3c4d5e6f70812', ''])
    def test_wrong_length_rejects_whole_match(self, deck):
        assert validate_match(_raw_player(0, deck=deck)).reason == INVALID_DECK_LENGTH

    def test_second_player_checked(self):
        assert validate_match(_raw_player(1, deck='0f1e')).reason == INVALID_DECK_LENGTH


class TestValidateLine:
    """Tests for line parsing."""

    def test_valid_line(self):
        assert validate_line(json.dumps(RAW)).ok

    def test_blank_line_skipped(self):
        assert validate_line('   \n') is None

    def test_invalid_json(self):
        assert validate_line('this is not json').reason == MALFORMED_SHAPE

    def test_truncated_json(self):
        assert validate_line(json.dumps(RAW)[:-10]).reason == MALFORMED_SHAPE

    def test_deeply_nested_json(self):
        line = '[' * 100000 + ']' * 100000
        assert validate_line(line).reason == MALFORMED_SHAPE

    def test_deeply_nested_players(self):
        line = '{"players": ' + '[' * 100000 + ']' * 100000 + '}'
        assert validate_line(line).reason == MALFORMED_SHAPE

    def test_rejection_never_raises(self, sample_lines):
        for line in sample_lines:
            validate_line(line)
