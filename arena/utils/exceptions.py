"""
Typed error taxonomy for settlement operations.

Every failure an operation can report is a subclass of ArenaError. Each error
carries a log-oriented message and a user-facing message, so the API layer can
surface failures without inspecting internals.
"""

from typing import Iterable, List, Optional


class ArenaError(Exception):
    """Base exception for settlement engine errors."""
    def __init__(self, message: str, user_message: str = None):
        super().__init__(message)
        self.user_message = user_message or message


# ============================================================================
# Validation errors
# ============================================================================

class ValidationError(ArenaError):
    """Raised when input is malformed. No state has been touched."""
    pass


# ============================================================================
# Lookup errors
# ============================================================================

class MatchNotFound(ArenaError):
    def __init__(self, match_id: int):
        super().__init__(f"Match {match_id} not found", "Match not found")
        self.match_id = match_id


class UserNotFound(ArenaError):
    def __init__(self, user_id: int):
        super().__init__(f"User {user_id} not found", "User not found")
        self.user_id = user_id


# ============================================================================
# State errors
# ============================================================================

def _status_names(statuses: Iterable) -> List[str]:
    return [getattr(s, 'value', str(s)) for s in statuses]


class MatchStateError(ArenaError):
    """Raised when an operation is illegal for the match's current status."""
    
    action = "perform this action"
    
    def __init__(self, status, legal_next_states: Optional[Iterable] = None, match_id: Optional[int] = None):
        self.status = status
        self.legal_next_states = list(legal_next_states or [])
        self.match_id = match_id
        status_name = getattr(status, 'value', str(status))
        legal = ', '.join(_status_names(self.legal_next_states)) or 'none'
        super().__init__(
            f"Cannot {self.action} for match {match_id} in status {status_name} "
            f"(legal next states: {legal})",
            f"Cannot {self.action} in current match state"
        )


class NotJoinable(MatchStateError):
    action = "join"


class NotLeavable(MatchStateError):
    action = "leave"


class NotReadyable(MatchStateError):
    action = "change ready status"


class NotReportable(MatchStateError):
    action = "report a result"


class NotDisputable(MatchStateError):
    action = "file a dispute"


class NotInEvidencePhase(MatchStateError):
    action = "submit evidence"


class NotRefundable(MatchStateError):
    action = "refund"


class NotAwaitingAdmin(MatchStateError):
    action = "resolve the dispute"


class NotDismissable(MatchStateError):
    action = "dismiss the dispute"


class InvalidTransition(MatchStateError):
    """Raised when a (from, to) pair is absent from the transition table."""
    
    def __init__(self, from_status, to_status, legal_next_states: Iterable, match_id: Optional[int] = None):
        self.from_status = from_status
        self.to_status = to_status
        self.action = f"transition to {getattr(to_status, 'value', str(to_status))}"
        super().__init__(from_status, legal_next_states, match_id)


# ============================================================================
# Authorization errors
# ============================================================================

class AuthorizationError(ArenaError):
    pass


class NotAMember(AuthorizationError):
    def __init__(self, match_id: int, user_id: int):
        super().__init__(
            f"User {user_id} is not a member of match {match_id}",
            "You are not in this match"
        )
        self.match_id = match_id
        self.user_id = user_id


# ============================================================================
# Resource errors
# ============================================================================

class ResourceError(ArenaError):
    pass


class InsufficientFunds(ResourceError):
    def __init__(self, user_id: int, required: int, available: Optional[int] = None):
        detail = f"required {required}" + (f", available {available}" if available is not None else "")
        super().__init__(
            f"Insufficient credits for user {user_id}: {detail}",
            "Insufficient credits"
        )
        self.user_id = user_id
        self.required = required
        self.available = available


class TeamFull(ResourceError):
    def __init__(self, match_id: int, team: str, capacity: int):
        super().__init__(
            f"Team {team} of match {match_id} is full ({capacity} players)",
            f"Team {team} is full"
        )
        self.match_id = match_id
        self.team = team
        self.capacity = capacity


class AlreadyMember(ResourceError):
    def __init__(self, match_id: int, user_id: int):
        super().__init__(
            f"User {user_id} is already in match {match_id}",
            "You are already in this match"
        )
        self.match_id = match_id
        self.user_id = user_id


class DisputeAlreadyExists(ResourceError):
    def __init__(self, match_id: int):
        super().__init__(
            f"A dispute already exists for match {match_id}",
            "A dispute already exists for this match"
        )
        self.match_id = match_id


class NoDisputeFound(ResourceError):
    def __init__(self, match_id: int):
        super().__init__(
            f"No dispute found for match {match_id}",
            "No dispute found for this match"
        )
        self.match_id = match_id


# ============================================================================
# Settlement errors
# ============================================================================

class SettlementFailed(ArenaError):
    """
    Raised when a ledger step inside a guarded sequence fails.
    
    The enclosing atomic unit has been rolled back, so the match keeps its
    previous (non-terminal) status and may be retried.
    """
    def __init__(self, match_id: int, step: str, cause: Optional[str] = None):
        super().__init__(
            f"Settlement step '{step}' failed for match {match_id}: {cause or 'unknown error'}",
            "Failed to settle match, please retry"
        )
        self.match_id = match_id
        self.step = step
        self.cause = cause
