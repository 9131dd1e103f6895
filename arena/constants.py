"""
Engine-wide constants for the Arena settlement core.

Values that are tunable per deployment live in Config; the values here are
fixed by the platform rules and shared across modules.
"""

class TeamSizeConstants:
    """Maximum players per side for each team size."""
    
    MAX_PLAYERS_PER_SIDE = {
        'SOLO': 1,
        'DUO': 2,
        'TRIO': 3,
        'SQUAD': 4,
        'TEAM': 5,
    }
    
    # Fallback for unknown sizes
    DEFAULT_MAX_PLAYERS = 1

class LedgerConstants:
    """Constants for ledger entries."""
    
    # Page size for transaction history queries
    DEFAULT_HISTORY_LIMIT = 50
    MAX_HISTORY_LIMIT = 200

class DisputeConstants:
    """Constants for the dispute and evidence workflow."""
    
    MIN_MESSAGE_LENGTH = 10
    MAX_MESSAGE_LENGTH = 500
    MAX_LINK_LENGTH = 500  # DisputeEvidence.submitted_link column size
    ALLOWED_LINK_SCHEMES = ('http', 'https')

class LeaderboardConstants:
    """Constants for rating leaderboards."""
    
    DEFAULT_LIMIT = 100
