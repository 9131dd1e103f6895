"""
Ledger - the only component that changes a user's spendable balance.

Every balance change writes exactly one Transaction entry in the same atomic
unit as the balance update, so the sum of a user's entries always equals the
cached User.credits value.

Debits use a conditional UPDATE (credits >= amount) so the funds check and the
decrement are one statement; two concurrent debits against a balance that
covers only one of them cannot both succeed.
"""

import json
from dataclasses import dataclass, field, asdict
from typing import ClassVar, Dict, List, Optional, Sequence, Tuple, Union

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from arena.constants import LedgerConstants
from arena.database.models import (
    User, Transaction, TransactionType, TransactionStatus
)
from arena.utils.exceptions import (
    ArenaError, InsufficientFunds, UserNotFound, ValidationError
)
from arena.utils.logger import setup_logger

logger = setup_logger(__name__)


# ============================================================================
# Entry metadata: one variant per transaction type
# ============================================================================

@dataclass(frozen=True)
class WagerMetadata:
    match_id: int

    kind: ClassVar[str] = "wager"
    types: ClassVar[Tuple[TransactionType, ...]] = (TransactionType.WAGER_DEBIT, TransactionType.MATCH_LOSS)


@dataclass(frozen=True)
class WinMetadata:
    match_id: int
    winning_team: str
    total_pot: int
    platform_fee: int

    kind: ClassVar[str] = "win"
    types: ClassVar[Tuple[TransactionType, ...]] = (TransactionType.MATCH_WIN,)


@dataclass(frozen=True)
class PlatformFeeMetadata:
    match_id: int
    fee_percentage: float
    total_pot: int

    kind: ClassVar[str] = "platform_fee"
    types: ClassVar[Tuple[TransactionType, ...]] = (TransactionType.PLATFORM_FEE,)


@dataclass(frozen=True)
class RefundMetadata:
    match_id: int
    reason: str

    kind: ClassVar[str] = "refund"
    types: ClassVar[Tuple[TransactionType, ...]] = (TransactionType.REFUND,)


@dataclass(frozen=True)
class AccountMetadata:
    reference: str
    admin_user_id: Optional[int] = None

    kind: ClassVar[str] = "account"
    types: ClassVar[Tuple[TransactionType, ...]] = (TransactionType.DEPOSIT, TransactionType.WITHDRAWAL)


EntryMetadata = Union[WagerMetadata, WinMetadata, PlatformFeeMetadata, RefundMetadata, AccountMetadata]

_METADATA_BY_KIND = {
    cls.kind: cls
    for cls in (WagerMetadata, WinMetadata, PlatformFeeMetadata, RefundMetadata, AccountMetadata)
}


def _check_metadata(transaction_type: TransactionType, metadata: EntryMetadata) -> None:
    if transaction_type not in metadata.types:
        raise ValidationError(
            f"{type(metadata).__name__} cannot describe a {transaction_type.value} entry"
        )


def metadata_for(transaction_type: TransactionType, **fields) -> EntryMetadata:
    """Construct the metadata variant that describes entries of the given type"""
    for cls in _METADATA_BY_KIND.values():
        if transaction_type in cls.types:
            return cls(**fields)
    raise ValidationError(f"No metadata variant for {transaction_type.value} entries")


def serialize_metadata(metadata: EntryMetadata) -> str:
    return json.dumps({"kind": metadata.kind, **asdict(metadata)}, sort_keys=True)


def parse_metadata(transaction_type: TransactionType, raw: Optional[str]) -> Optional[EntryMetadata]:
    """Rebuild the metadata variant stored on an entry, checking it matches the entry type"""
    if not raw:
        return None
    data = json.loads(raw)
    cls = _METADATA_BY_KIND.get(data.pop("kind", None))
    if cls is None:
        raise ValidationError(f"Unknown metadata kind in ledger entry: {raw}")
    metadata = cls(**data)
    _check_metadata(transaction_type, metadata)
    return metadata


def _match_id_of(metadata: EntryMetadata) -> Optional[int]:
    return getattr(metadata, 'match_id', None)


# ============================================================================
# Results
# ============================================================================

@dataclass
class TransactionResult:
    """Result of a single ledger movement"""
    success: bool
    transaction_id: Optional[int] = None
    new_balance: Optional[int] = None
    error: Optional[ArenaError] = None

    def raise_for_error(self) -> 'TransactionResult':
        if not self.success and self.error is not None:
            raise self.error
        return self


@dataclass
class BatchResult:
    """Result of an all-or-nothing batch of ledger movements"""
    success: bool
    transaction_ids: List[int] = field(default_factory=list)
    balances: Dict[int, int] = field(default_factory=dict)
    error: Optional[ArenaError] = None

    def raise_for_error(self) -> 'BatchResult':
        if not self.success and self.error is not None:
            raise self.error
        return self


class Ledger:
    """
    Atomic credit-balance mutation primitive.

    All methods accept an optional session. With a session they join the
    caller's atomic unit and never commit; without one they run in their own
    transaction.
    """

    def __init__(self, db):
        self.db = db
        self.logger = logger

    async def _run(self, operation, session: Optional[AsyncSession]):
        if session:
            return await operation(session)
        async with self.db.transaction() as txn_session:
            return await operation(txn_session)

    @staticmethod
    def _validate_amount(amount: int) -> None:
        if not isinstance(amount, int) or isinstance(amount, bool) or amount < 0:
            raise ValidationError(f"Ledger amounts must be non-negative integers, got {amount!r}")

    async def _record_entry(self, session: AsyncSession, user_id: int, transaction_type: TransactionType,
                            signed_amount: int, metadata: EntryMetadata) -> Tuple[Transaction, int]:
        balance = (await session.execute(
            select(User.credits).where(User.id == user_id)
        )).scalar_one()

        entry = Transaction(
            user_id=user_id,
            type=transaction_type,
            amount=signed_amount,
            status=TransactionStatus.COMPLETED,
            balance_after=balance,
            match_id=_match_id_of(metadata),
            metadata_json=serialize_metadata(metadata),
        )
        session.add(entry)
        await session.flush()
        return entry, balance

    async def _conditional_decrement(self, session: AsyncSession, user_id: int, amount: int) -> bool:
        result = await session.execute(
            update(User)
            .where(User.id == user_id, User.credits >= amount)
            .values(credits=User.credits - amount)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _increment(self, session: AsyncSession, user_id: int, amount: int) -> bool:
        result = await session.execute(
            update(User)
            .where(User.id == user_id)
            .values(credits=User.credits + amount)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _current_balance(self, session: AsyncSession, user_id: int) -> Optional[int]:
        return (await session.execute(
            select(User.credits).where(User.id == user_id)
        )).scalar_one_or_none()

    # ============================================================================
    # Single-user movements
    # ============================================================================

    async def debit(self, user_id: int, amount: int, transaction_type: TransactionType,
                    metadata: EntryMetadata, session: Optional[AsyncSession] = None) -> TransactionResult:
        """
        Decrement a user's balance and record a negative entry.

        Returns a failed result carrying InsufficientFunds (or UserNotFound) when
        the conditional decrement matched no row; nothing was written in that case.
        """
        self._validate_amount(amount)
        _check_metadata(transaction_type, metadata)

        async def _debit(session: AsyncSession) -> TransactionResult:
            if not await self._conditional_decrement(session, user_id, amount):
                available = await self._current_balance(session, user_id)
                error = (UserNotFound(user_id) if available is None
                         else InsufficientFunds(user_id, amount, available))
                self.logger.info(f"Debit of {amount} rejected for user {user_id}: {error}")
                return TransactionResult(success=False, error=error)

            entry, balance = await self._record_entry(session, user_id, transaction_type, -amount, metadata)
            self.logger.info(
                f"Debited {amount} from user {user_id} ({transaction_type.value}), balance {balance}"
            )
            return TransactionResult(success=True, transaction_id=entry.id, new_balance=balance)

        return await self._run(_debit, session)

    async def credit(self, user_id: int, amount: int, transaction_type: TransactionType,
                     metadata: EntryMetadata, session: Optional[AsyncSession] = None) -> TransactionResult:
        """Increment a user's balance and record a positive entry"""
        self._validate_amount(amount)
        _check_metadata(transaction_type, metadata)

        async def _credit(session: AsyncSession) -> TransactionResult:
            if not await self._increment(session, user_id, amount):
                return TransactionResult(success=False, error=UserNotFound(user_id))

            entry, balance = await self._record_entry(session, user_id, transaction_type, amount, metadata)
            self.logger.info(
                f"Credited {amount} to user {user_id} ({transaction_type.value}), balance {balance}"
            )
            return TransactionResult(success=True, transaction_id=entry.id, new_balance=balance)

        return await self._run(_credit, session)

    # ============================================================================
    # Batch movements
    # ============================================================================

    async def _lock_users(self, session: AsyncSession, user_ids: Sequence[int]) -> Dict[int, int]:
        # Lock in id order so concurrent batches over overlapping users cannot deadlock
        result = await session.execute(
            select(User.id, User.credits)
            .where(User.id.in_(user_ids))
            .order_by(User.id)
            .with_for_update()
        )
        return {row.id: row.credits for row in result}

    @staticmethod
    def _validate_batch(user_ids: Sequence[int]) -> List[int]:
        ids = list(user_ids)
        if len(set(ids)) != len(ids):
            raise ValidationError("Duplicate users in ledger batch")
        return ids

    async def batch_debit(self, user_ids: Sequence[int], amount_per_user: int,
                          transaction_type: TransactionType, metadata: EntryMetadata,
                          session: Optional[AsyncSession] = None) -> BatchResult:
        """
        Debit every user the same amount, all-or-nothing.

        Every participant is checked against their locked balance before any
        balance is touched; if one is short the batch fails with no mutation.
        A conditional decrement that still misses (a concurrent writer the
        storage isolation did not block) raises InsufficientFunds so the
        enclosing atomic unit rolls back the earlier debits.
        """
        self._validate_amount(amount_per_user)
        _check_metadata(transaction_type, metadata)
        ids = self._validate_batch(user_ids)

        async def _batch_debit(session: AsyncSession) -> BatchResult:
            balances = await self._lock_users(session, ids)

            for user_id in ids:
                if user_id not in balances:
                    return BatchResult(success=False, error=UserNotFound(user_id))
                if balances[user_id] < amount_per_user:
                    self.logger.info(
                        f"Batch debit of {amount_per_user} rejected: user {user_id} has {balances[user_id]}"
                    )
                    return BatchResult(
                        success=False,
                        error=InsufficientFunds(user_id, amount_per_user, balances[user_id])
                    )

            batch = BatchResult(success=True)
            for user_id in ids:
                if not await self._conditional_decrement(session, user_id, amount_per_user):
                    raise InsufficientFunds(user_id, amount_per_user)
                entry, balance = await self._record_entry(
                    session, user_id, transaction_type, -amount_per_user, metadata
                )
                batch.transaction_ids.append(entry.id)
                batch.balances[user_id] = balance

            self.logger.info(
                f"Batch debited {amount_per_user} from {len(ids)} users ({transaction_type.value})"
            )
            return batch

        return await self._run(_batch_debit, session)

    async def batch_credit(self, user_ids: Sequence[int], amount_per_user: int,
                           transaction_type: TransactionType, metadata: EntryMetadata,
                           session: Optional[AsyncSession] = None) -> BatchResult:
        """Credit every user the same amount inside one atomic unit"""
        self._validate_amount(amount_per_user)
        _check_metadata(transaction_type, metadata)
        ids = self._validate_batch(user_ids)

        async def _batch_credit(session: AsyncSession) -> BatchResult:
            balances = await self._lock_users(session, ids)
            missing = [user_id for user_id in ids if user_id not in balances]
            if missing:
                return BatchResult(success=False, error=UserNotFound(missing[0]))

            batch = BatchResult(success=True)
            for user_id in ids:
                await self._increment(session, user_id, amount_per_user)
                entry, balance = await self._record_entry(
                    session, user_id, transaction_type, amount_per_user, metadata
                )
                batch.transaction_ids.append(entry.id)
                batch.balances[user_id] = balance

            self.logger.info(
                f"Batch credited {amount_per_user} to {len(ids)} users ({transaction_type.value})"
            )
            return batch

        return await self._run(_batch_credit, session)

    # ============================================================================
    # Account movements
    # ============================================================================

    async def deposit(self, user_id: int, amount: int, reference: str,
                      admin_user_id: Optional[int] = None,
                      session: Optional[AsyncSession] = None) -> TransactionResult:
        return await self.credit(
            user_id, amount, TransactionType.DEPOSIT,
            AccountMetadata(reference=reference, admin_user_id=admin_user_id),
            session=session
        )

    async def withdraw(self, user_id: int, amount: int, reference: str,
                       admin_user_id: Optional[int] = None,
                       session: Optional[AsyncSession] = None) -> TransactionResult:
        return await self.debit(
            user_id, amount, TransactionType.WITHDRAWAL,
            AccountMetadata(reference=reference, admin_user_id=admin_user_id),
            session=session
        )

    # ============================================================================
    # Reads
    # ============================================================================

    async def get_balance(self, user_id: int) -> int:
        async with self.db.get_session() as session:
            balance = await self._current_balance(session, user_id)
            if balance is None:
                raise UserNotFound(user_id)
            return balance

    async def get_history(self, user_id: int, limit: int = LedgerConstants.DEFAULT_HISTORY_LIMIT,
                          offset: int = 0) -> List[Transaction]:
        """Get a user's ledger entries, newest first"""
        limit = max(1, min(limit, LedgerConstants.MAX_HISTORY_LIMIT))
        async with self.db.get_session() as session:
            result = await session.execute(
                select(Transaction)
                .where(Transaction.user_id == user_id)
                .order_by(Transaction.id.desc())
                .limit(limit)
                .offset(offset)
            )
            return list(result.scalars().all())

    async def get_entries_for_match(self, match_id: int) -> List[Transaction]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(Transaction)
                .where(Transaction.match_id == match_id)
                .order_by(Transaction.id)
            )
            return list(result.scalars().all())

    async def get_stats(self, user_id: int) -> dict:
        """Totals per transaction type for a user's completed entries"""
        async with self.db.get_session() as session:
            result = await session.execute(
                select(Transaction.type, func.coalesce(func.sum(Transaction.amount), 0))
                .where(
                    Transaction.user_id == user_id,
                    Transaction.status == TransactionStatus.COMPLETED
                )
                .group_by(Transaction.type)
            )
            totals = {row[0]: row[1] for row in result}

        stats = {
            'total_deposits': totals.get(TransactionType.DEPOSIT, 0),
            'total_withdrawals': abs(totals.get(TransactionType.WITHDRAWAL, 0)),
            'total_wagered': abs(totals.get(TransactionType.WAGER_DEBIT, 0))
                             + abs(totals.get(TransactionType.MATCH_LOSS, 0)),
            'total_winnings': totals.get(TransactionType.MATCH_WIN, 0),
            'total_refunds': totals.get(TransactionType.REFUND, 0),
            'platform_fees': totals.get(TransactionType.PLATFORM_FEE, 0),
        }
        stats['net_profit'] = stats['total_winnings'] + stats['total_refunds'] - stats['total_wagered']
        return stats
