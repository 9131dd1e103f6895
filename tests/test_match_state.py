"""
Tests for the match status state machine.

Covers the full transition table, terminal states, and the operation guards
that sit on top of it.
"""
import itertools

import pytest

from arena.database.models import MatchStatus
from arena.operations.match_state import (
    VALID_TRANSITIONS, FINAL_STATES, MatchStateRules,
    is_valid_transition, get_valid_next_states, validate_transition, get_status_description
)
from arena.utils.exceptions import InvalidTransition, MatchStateError

S = MatchStatus

EXPECTED_TRANSITIONS = {
    (S.LOBBY, S.OPEN),
    (S.OPEN, S.LOBBY),
    (S.OPEN, S.IN_PROGRESS),
    (S.IN_PROGRESS, S.COMPLETED),
    (S.IN_PROGRESS, S.DISPUTED),
    (S.DISPUTED, S.AWAITING_OPPONENT_EVIDENCE),
    (S.DISPUTED, S.AWAITING_ADMIN_REVIEW),
    (S.AWAITING_OPPONENT_EVIDENCE, S.AWAITING_ADMIN_REVIEW),
    (S.AWAITING_ADMIN_REVIEW, S.COMPLETED),
    (S.AWAITING_ADMIN_REVIEW, S.REFUNDED),
    (S.LOBBY, S.REFUNDED),
    (S.OPEN, S.REFUNDED),
    (S.IN_PROGRESS, S.REFUNDED),
    (S.DISPUTED, S.REFUNDED),
    (S.AWAITING_OPPONENT_EVIDENCE, S.REFUNDED),
}

ALL_PAIRS = list(itertools.product(MatchStatus, MatchStatus))


class TestTransitionTable:
    """Exhaustive checks over every ordered pair of statuses"""

    def test_table_matches_expected_set(self):
        """Should contain exactly the expected transitions, without duplicates"""
        pairs = [(t.from_status, t.to_status) for t in VALID_TRANSITIONS]
        assert len(pairs) == len(set(pairs))
        assert set(pairs) == EXPECTED_TRANSITIONS

    @pytest.mark.parametrize("from_status,to_status", ALL_PAIRS)
    def test_is_valid_transition(self, from_status, to_status):
        """Should accept listed pairs and reject every other pair"""
        expected = (from_status, to_status) in EXPECTED_TRANSITIONS
        assert is_valid_transition(from_status, to_status) is expected

    def test_self_transitions_are_invalid(self):
        """Should never allow a status to transition to itself"""
        for status in MatchStatus:
            assert not is_valid_transition(status, status)

    @pytest.mark.parametrize("terminal", [S.COMPLETED, S.REFUNDED])
    def test_terminal_states_have_no_outgoing_transitions(self, terminal):
        """Should report no next states for COMPLETED and REFUNDED"""
        assert get_valid_next_states(terminal) == []
        for target in MatchStatus:
            assert not is_valid_transition(terminal, target)

    def test_final_states(self):
        assert FINAL_STATES == {S.COMPLETED, S.REFUNDED}

    def test_every_non_terminal_state_can_refund(self):
        """Should allow the administrative refund from every non-terminal state"""
        for status in MatchStatus:
            if status not in FINAL_STATES:
                assert is_valid_transition(status, S.REFUNDED)


class TestValidateTransition:

    def test_valid_transition_passes(self):
        validate_transition(S.OPEN, S.IN_PROGRESS)

    def test_invalid_transition_reports_legal_states(self):
        """Should raise InvalidTransition carrying the legal next states"""
        with pytest.raises(InvalidTransition) as exc_info:
            validate_transition(S.LOBBY, S.COMPLETED, match_id=7)

        error = exc_info.value
        assert isinstance(error, MatchStateError)
        assert error.from_status == S.LOBBY
        assert error.to_status == S.COMPLETED
        assert error.match_id == 7
        assert set(error.legal_next_states) == {S.OPEN, S.REFUNDED}
        assert "OPEN" in str(error)

    def test_terminal_rejection_lists_no_states(self):
        with pytest.raises(InvalidTransition) as exc_info:
            validate_transition(S.REFUNDED, S.OPEN)
        assert exc_info.value.legal_next_states == []
        assert "none" in str(exc_info.value)


class TestMatchStateRules:
    """Operation guards must stay consistent with the transition table"""

    def test_can_join(self):
        allowed = {s for s in MatchStatus if MatchStateRules.can_join(s)}
        assert allowed == {S.LOBBY, S.OPEN}

    def test_can_ready(self):
        allowed = {s for s in MatchStatus if MatchStateRules.can_ready(s)}
        assert allowed == {S.OPEN}

    def test_can_report_result(self):
        allowed = {s for s in MatchStatus if MatchStateRules.can_report_result(s)}
        assert allowed == {S.IN_PROGRESS}

    def test_can_dispute(self):
        allowed = {s for s in MatchStatus if MatchStateRules.can_dispute(s)}
        assert allowed == {S.IN_PROGRESS, S.COMPLETED}

    def test_can_submit_evidence(self):
        allowed = {s for s in MatchStatus if MatchStateRules.can_submit_evidence(s)}
        assert allowed == {S.DISPUTED, S.AWAITING_OPPONENT_EVIDENCE, S.AWAITING_ADMIN_REVIEW}

    def test_requires_admin_action(self):
        allowed = {s for s in MatchStatus if MatchStateRules.requires_admin_action(s)}
        assert allowed == {S.AWAITING_ADMIN_REVIEW}

    def test_ready_guard_protects_match_start(self):
        """Should only allow ready changes where the start transition exists"""
        for status in MatchStatus:
            if MatchStateRules.can_ready(status):
                assert is_valid_transition(status, S.IN_PROGRESS)

    def test_report_guard_protects_completion(self):
        for status in MatchStatus:
            if MatchStateRules.can_report_result(status):
                assert is_valid_transition(status, S.COMPLETED)

    def test_refund_guard_matches_table(self):
        """Should allow refunds exactly where a transition to REFUNDED exists"""
        for status in MatchStatus:
            assert MatchStateRules.can_refund(status) == is_valid_transition(status, S.REFUNDED)

    def test_admin_guard_protects_resolution(self):
        for status in MatchStatus:
            if MatchStateRules.requires_admin_action(status):
                assert is_valid_transition(status, S.COMPLETED)
                assert is_valid_transition(status, S.REFUNDED)

    def test_join_guard_has_lobby_origin(self):
        """Should only allow joins from states that can reach or stay OPEN"""
        for status in MatchStatus:
            if MatchStateRules.can_join(status):
                assert status == S.OPEN or is_valid_transition(status, S.OPEN)

    def test_wagers_collected(self):
        assert not MatchStateRules.wagers_collected(S.LOBBY)
        assert not MatchStateRules.wagers_collected(S.OPEN)
        assert MatchStateRules.wagers_collected(S.IN_PROGRESS)
        assert MatchStateRules.wagers_collected(S.DISPUTED)

    def test_is_final_state(self):
        for status in MatchStatus:
            assert MatchStateRules.is_final_state(status) == (status in FINAL_STATES)


def test_every_status_has_description():
    for status in MatchStatus:
        assert get_status_description(status) != 'Unknown status'
