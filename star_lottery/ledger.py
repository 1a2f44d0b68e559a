"""Star balances of participants and the audit trail behind them."""
import asyncio
from abc import ABC, abstractmethod
from typing import Dict, List, Optional
from uuid import uuid4

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from .config import Settings, StorageMode
from .database import StarTransactionDB, UserBalanceDB
from .db import init_db, make_engine, make_session_factory, storage_session
from .errors import PaymentFailed
from .logging_config import get_logger
from .models import StarTransaction, UserBalance, utcnow

logger = get_logger(__name__)

ENTRY_FEE = "entry_fee"
PAYOUT = "payout"
REFUND = "refund"
DEPOSIT = "deposit"


def _check_amount(amount: int, allow_zero: bool = False):
    if amount < 0 or (amount == 0 and not allow_zero):
        raise ValueError(f"invalid star amount {amount}")


class BalanceLedger(ABC):
    """Balance Ledger contract. Every movement is recorded as a StarTransaction."""

    def __init__(self, starting_balance: int = 0):
        self.starting_balance = starting_balance

    @abstractmethod
    async def get_record(self, user_id: str) -> UserBalance:
        """Balance record of a participant, created with defaults on first sight."""

    async def get_balance(self, user_id: str) -> int:
        record = await self.get_record(user_id)
        return record.stars_balance

    @abstractmethod
    async def charge(self, user_id: str, amount: int, reference: Optional[str] = None) -> StarTransaction:
        """Take `amount` stars; raises PaymentFailed if the balance would go negative."""

    @abstractmethod
    async def credit(self, user_id: str, amount: int, reference: Optional[str] = None) -> StarTransaction:
        """Pay out winnings. Repeating a reference returns the first transaction."""

    @abstractmethod
    async def refund(self, user_id: str, amount: int, reference: Optional[str] = None) -> StarTransaction:
        """Reverse an entry fee charge."""

    @abstractmethod
    async def deposit(self, user_id: str, amount: int, reference: Optional[str] = None) -> StarTransaction:
        """Top up a balance from an external payment. Idempotent on reference."""

    @abstractmethod
    async def list_transactions(self, user_id: str) -> List[StarTransaction]:
        ...


class InMemoryLedger(BalanceLedger):
    def __init__(self, starting_balance: int = 0):
        super().__init__(starting_balance)
        self._balances: Dict[str, UserBalance] = {}
        self._transactions: List[StarTransaction] = []
        self._lock = asyncio.Lock()

    def _ensure(self, user_id: str) -> UserBalance:
        if user_id not in self._balances:
            self._balances[user_id] = UserBalance(
                user_id=user_id,
                stars_balance=self.starting_balance,
                updated_at=utcnow(),
            )
        return self._balances[user_id]

    def _find(self, transaction_type: str, reference: Optional[str]) -> Optional[StarTransaction]:
        if reference is None:
            return None
        for tx in self._transactions:
            if tx.transaction_type == transaction_type and tx.reference == reference:
                return tx
        return None

    def _record(self, user_id: str, transaction_type: str, amount: int, reference: Optional[str]) -> StarTransaction:
        tx = StarTransaction(
            id=str(uuid4()),
            user_id=user_id,
            transaction_type=transaction_type,
            amount=amount,
            reference=reference,
            created_at=utcnow(),
        )
        self._transactions.append(tx)
        logger.info(
            "Ledger %s user_id=%s amount=%s reference=%s tx=%s",
            transaction_type,
            user_id,
            amount,
            reference,
            tx.id,
        )
        return tx

    async def get_record(self, user_id: str) -> UserBalance:
        async with self._lock:
            return self._ensure(user_id).model_copy()

    async def charge(self, user_id: str, amount: int, reference: Optional[str] = None) -> StarTransaction:
        _check_amount(amount)
        async with self._lock:
            record = self._ensure(user_id)
            if record.stars_balance < amount:
                raise PaymentFailed(
                    f"user {user_id} has {record.stars_balance} stars, needs {amount}",
                    reason=PaymentFailed.INSUFFICIENT_BALANCE,
                    amount=amount,
                )
            record.stars_balance -= amount
            record.total_spent += amount
            record.games_played += 1
            record.updated_at = utcnow()
            return self._record(user_id, ENTRY_FEE, amount, reference)

    async def credit(self, user_id: str, amount: int, reference: Optional[str] = None) -> StarTransaction:
        _check_amount(amount, allow_zero=True)
        async with self._lock:
            existing = self._find(PAYOUT, reference)
            if existing:
                return existing
            record = self._ensure(user_id)
            record.stars_balance += amount
            record.total_won += amount
            record.games_won += 1
            record.updated_at = utcnow()
            return self._record(user_id, PAYOUT, amount, reference)

    async def refund(self, user_id: str, amount: int, reference: Optional[str] = None) -> StarTransaction:
        _check_amount(amount)
        async with self._lock:
            existing = self._find(REFUND, reference)
            if existing:
                return existing
            record = self._ensure(user_id)
            record.stars_balance += amount
            record.total_spent = max(record.total_spent - amount, 0)
            record.games_played = max(record.games_played - 1, 0)
            record.updated_at = utcnow()
            return self._record(user_id, REFUND, amount, reference)

    async def deposit(self, user_id: str, amount: int, reference: Optional[str] = None) -> StarTransaction:
        _check_amount(amount)
        async with self._lock:
            existing = self._find(DEPOSIT, reference)
            if existing:
                return existing
            record = self._ensure(user_id)
            record.stars_balance += amount
            record.updated_at = utcnow()
            return self._record(user_id, DEPOSIT, amount, reference)

    async def list_transactions(self, user_id: str) -> List[StarTransaction]:
        return [tx.model_copy() for tx in self._transactions if tx.user_id == user_id]


class SqlLedger(BalanceLedger):
    """Ledger over user_balances; charges are a conditional UPDATE so they never overdraw."""

    def __init__(self, session_factory, starting_balance: int = 0):
        super().__init__(starting_balance)
        self.session_factory = session_factory
        self.balances = UserBalanceDB.__table__

    def _ensure(self, session, user_id: str) -> UserBalanceDB:
        row = session.get(UserBalanceDB, user_id)
        if row is None:
            session.add(UserBalanceDB(user_id=user_id, stars_balance=self.starting_balance))
            try:
                session.commit()
            except IntegrityError:
                # Created concurrently by another request.
                session.rollback()
            row = session.get(UserBalanceDB, user_id)
        return row

    def _find(self, session, transaction_type: str, reference: Optional[str]) -> Optional[StarTransactionDB]:
        if reference is None:
            return None
        statement = select(StarTransactionDB).where(
            StarTransactionDB.transaction_type == transaction_type,
            StarTransactionDB.reference == reference,
        )
        return session.exec(statement).first()

    def _apply(
        self,
        session,
        user_id: str,
        transaction_type: str,
        amount: int,
        reference: Optional[str],
        where=None,
        idempotent: bool = False,
        **deltas,
    ) -> Optional[StarTransaction]:
        conditions = [self.balances.c.user_id == user_id]
        if where is not None:
            conditions.append(where)
        values = {name: getattr(self.balances.c, name) + delta for name, delta in deltas.items()}
        values["updated_at"] = utcnow()
        result = session.connection().execute(update(self.balances).where(*conditions).values(**values))
        if result.rowcount != 1:
            session.rollback()
            return None

        tx_row = StarTransactionDB(
            user_id=user_id,
            transaction_type=transaction_type,
            amount=amount,
            reference=reference,
            idempotency_key=f"{transaction_type}:{reference}" if idempotent and reference else None,
        )
        session.add(tx_row)
        try:
            session.commit()
        except IntegrityError:
            # Another writer applied the same reference first; its balance change stands.
            session.rollback()
            existing = self._find(session, transaction_type, reference)
            logger.info("Ledger %s already applied reference=%s", transaction_type, reference)
            return StarTransaction.model_validate(existing)
        session.refresh(tx_row)
        logger.info(
            "Ledger %s user_id=%s amount=%s reference=%s tx=%s",
            transaction_type,
            user_id,
            amount,
            reference,
            tx_row.id,
        )
        return StarTransaction.model_validate(tx_row)

    async def get_record(self, user_id: str) -> UserBalance:
        with storage_session(self.session_factory) as session:
            return UserBalance.model_validate(self._ensure(session, user_id))

    async def charge(self, user_id: str, amount: int, reference: Optional[str] = None) -> StarTransaction:
        _check_amount(amount)
        with storage_session(self.session_factory) as session:
            self._ensure(session, user_id)
            tx = self._apply(
                session,
                user_id,
                ENTRY_FEE,
                amount,
                reference,
                where=self.balances.c.stars_balance >= amount,
                stars_balance=-amount,
                total_spent=amount,
                games_played=1,
            )
            if tx is None:
                raise PaymentFailed(
                    f"user {user_id} cannot cover {amount} stars",
                    reason=PaymentFailed.INSUFFICIENT_BALANCE,
                    amount=amount,
                )
            return tx

    async def credit(self, user_id: str, amount: int, reference: Optional[str] = None) -> StarTransaction:
        _check_amount(amount, allow_zero=True)
        with storage_session(self.session_factory) as session:
            existing = self._find(session, PAYOUT, reference)
            if existing:
                return StarTransaction.model_validate(existing)
            self._ensure(session, user_id)
            return self._apply(
                session, user_id, PAYOUT, amount, reference,
                stars_balance=amount, total_won=amount, games_won=1, idempotent=True,
            )

    async def refund(self, user_id: str, amount: int, reference: Optional[str] = None) -> StarTransaction:
        _check_amount(amount)
        with storage_session(self.session_factory) as session:
            existing = self._find(session, REFUND, reference)
            if existing:
                return StarTransaction.model_validate(existing)
            self._ensure(session, user_id)
            return self._apply(
                session, user_id, REFUND, amount, reference,
                stars_balance=amount, total_spent=-amount, games_played=-1, idempotent=True,
            )

    async def deposit(self, user_id: str, amount: int, reference: Optional[str] = None) -> StarTransaction:
        _check_amount(amount)
        with storage_session(self.session_factory) as session:
            existing = self._find(session, DEPOSIT, reference)
            if existing:
                return StarTransaction.model_validate(existing)
            self._ensure(session, user_id)
            return self._apply(session, user_id, DEPOSIT, amount, reference, idempotent=True, stars_balance=amount)

    async def list_transactions(self, user_id: str) -> List[StarTransaction]:
        with storage_session(self.session_factory) as session:
            statement = (
                select(StarTransactionDB)
                .where(StarTransactionDB.user_id == user_id)
                .order_by(StarTransactionDB.created_at)
            )
            return [StarTransaction.model_validate(row) for row in session.exec(statement).all()]


def create_ledger(settings: Settings, session_factory=None) -> BalanceLedger:
    if settings.storage_mode == StorageMode.IN_MEMORY:
        return InMemoryLedger(starting_balance=settings.starting_balance)
    if session_factory is None:
        engine = make_engine(settings.database_url)
        init_db(engine)
        session_factory = make_session_factory(engine)
    return SqlLedger(session_factory, starting_balance=settings.starting_balance)
