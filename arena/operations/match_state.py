"""
Match status state machine.

Defines the legal status transitions for a match and the operation-level
guards built on top of them. Every guard's positive states are origins of the
transition the guard protects; tests/test_match_state.py checks this.

COMPLETED and REFUNDED are terminal and have no outgoing transitions.
"""

from dataclasses import dataclass
from typing import FrozenSet, List, Optional, Tuple

from arena.database.models import MatchStatus
from arena.utils.exceptions import InvalidTransition


@dataclass(frozen=True)
class StateTransition:
    from_status: MatchStatus
    to_status: MatchStatus
    condition: Optional[str] = None


VALID_TRANSITIONS: Tuple[StateTransition, ...] = (
    StateTransition(MatchStatus.LOBBY, MatchStatus.OPEN, "First player joined"),
    StateTransition(MatchStatus.OPEN, MatchStatus.LOBBY, "Player left before start"),
    StateTransition(MatchStatus.OPEN, MatchStatus.IN_PROGRESS, "All ready, both sides full, wagers collected"),
    StateTransition(MatchStatus.IN_PROGRESS, MatchStatus.COMPLETED, "Result reported and winnings distributed"),
    StateTransition(MatchStatus.IN_PROGRESS, MatchStatus.DISPUTED, "Result disputed"),

    # Dispute escalation
    StateTransition(MatchStatus.DISPUTED, MatchStatus.AWAITING_OPPONENT_EVIDENCE),
    StateTransition(MatchStatus.DISPUTED, MatchStatus.AWAITING_ADMIN_REVIEW),
    StateTransition(MatchStatus.AWAITING_OPPONENT_EVIDENCE, MatchStatus.AWAITING_ADMIN_REVIEW,
                    "Opponent evidence submitted or deadline passed"),
    StateTransition(MatchStatus.AWAITING_ADMIN_REVIEW, MatchStatus.COMPLETED, "Admin approved payout"),
    StateTransition(MatchStatus.AWAITING_ADMIN_REVIEW, MatchStatus.REFUNDED, "Admin refunded"),

    # Administrative refund from any non-terminal state
    StateTransition(MatchStatus.LOBBY, MatchStatus.REFUNDED, "Admin action"),
    StateTransition(MatchStatus.OPEN, MatchStatus.REFUNDED, "Admin action"),
    StateTransition(MatchStatus.IN_PROGRESS, MatchStatus.REFUNDED, "Admin action"),
    StateTransition(MatchStatus.DISPUTED, MatchStatus.REFUNDED, "Admin action"),
    StateTransition(MatchStatus.AWAITING_OPPONENT_EVIDENCE, MatchStatus.REFUNDED, "Admin action"),
)

_TRANSITION_PAIRS: FrozenSet[Tuple[MatchStatus, MatchStatus]] = frozenset(
    (t.from_status, t.to_status) for t in VALID_TRANSITIONS
)

FINAL_STATES = frozenset({MatchStatus.COMPLETED, MatchStatus.REFUNDED})


def is_valid_transition(from_status: MatchStatus, to_status: MatchStatus) -> bool:
    """Check if a state transition is valid"""
    return (from_status, to_status) in _TRANSITION_PAIRS


def get_valid_next_states(current: MatchStatus) -> List[MatchStatus]:
    """Get all valid next states from the current state, in table order"""
    return [t.to_status for t in VALID_TRANSITIONS if t.from_status == current]


def validate_transition(from_status: MatchStatus, to_status: MatchStatus,
                        match_id: Optional[int] = None) -> None:
    """
    Validate a transition or raise InvalidTransition.

    The raised error carries the legal next states for the caller's diagnostics.
    """
    if not is_valid_transition(from_status, to_status):
        raise InvalidTransition(
            from_status, to_status, get_valid_next_states(from_status), match_id=match_id
        )


class MatchStateRules:
    """State machine rules for specific match operations"""

    @staticmethod
    def can_join(status: MatchStatus) -> bool:
        return status in (MatchStatus.LOBBY, MatchStatus.OPEN)

    @staticmethod
    def can_ready(status: MatchStatus) -> bool:
        return status == MatchStatus.OPEN

    @staticmethod
    def can_report_result(status: MatchStatus) -> bool:
        return status == MatchStatus.IN_PROGRESS

    @staticmethod
    def can_dispute(status: MatchStatus) -> bool:
        return status in (MatchStatus.IN_PROGRESS, MatchStatus.COMPLETED)

    @staticmethod
    def can_submit_evidence(status: MatchStatus) -> bool:
        return status in (
            MatchStatus.DISPUTED,
            MatchStatus.AWAITING_OPPONENT_EVIDENCE,
            MatchStatus.AWAITING_ADMIN_REVIEW,
        )

    @staticmethod
    def is_final_state(status: MatchStatus) -> bool:
        return status in FINAL_STATES

    @staticmethod
    def can_refund(status: MatchStatus) -> bool:
        return not MatchStateRules.is_final_state(status)

    @staticmethod
    def requires_admin_action(status: MatchStatus) -> bool:
        return status == MatchStatus.AWAITING_ADMIN_REVIEW

    @staticmethod
    def wagers_collected(status: MatchStatus) -> bool:
        """True once the match has passed the start-of-match debit"""
        return status not in (MatchStatus.LOBBY, MatchStatus.OPEN)


STATUS_DESCRIPTIONS = {
    MatchStatus.LOBBY: 'Match is being set up',
    MatchStatus.OPEN: 'Match is open and accepting players',
    MatchStatus.IN_PROGRESS: 'Match is currently being played',
    MatchStatus.COMPLETED: 'Match has been completed',
    MatchStatus.DISPUTED: 'Match result is being disputed',
    MatchStatus.REFUNDED: 'Match has been refunded to all participants',
    MatchStatus.AWAITING_ADMIN_REVIEW: 'Waiting for admin to review dispute',
    MatchStatus.AWAITING_OPPONENT_EVIDENCE: 'Waiting for opposing team to submit evidence',
}


def get_status_description(status: MatchStatus) -> str:
    """Get human-readable description of match status"""
    return STATUS_DESCRIPTIONS.get(status, 'Unknown status')
