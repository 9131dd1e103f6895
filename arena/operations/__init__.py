"""
Operations Layer

Business logic for the settlement core. Operations compose database access into
guarded atomic units and own every mutation of match status and user balance.

Architecture:
- Database layer: models, engine/session management and plain reads
- Operations layer: state machine, ledger, ratings, settlement and disputes
- Services layer: background delivery and reconciliation

Each operations module focuses on a specific domain:
- match_state: legal status transitions and operation guards
- ledger: atomic credit movements and their ledger entries
- rating: per-game player and team ratings
- settlement: match lifecycle, wager collection, payout and refunds
- disputes: dispute filing, evidence and admin resolution
"""
