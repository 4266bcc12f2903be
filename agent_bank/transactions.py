"""
Transaction Log Module

Append-only record of every balance change. Each record stores the account
balance after the change, so replaying an account's history from zero in
(created_at, sequence) order reconstructs every balance it ever had.
"""

from datetime import datetime, date, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .money import Money
from .storage import StorageInterface, StorageRecord, parse_datetime, parse_money, utc_now
from .errors import AccountNotFound, LedgerIntegrityError
from .logging_config import get_logger


class TransactionType(Enum):
    """Types of ledger transactions"""
    DEPOSIT = "deposit"                          # Funds arriving from checking
    WITHDRAWAL = "withdrawal"                    # Funds leaving towards checking
    TRANSFER_IN = "transfer_in"
    TRANSFER_OUT = "transfer_out"
    INTEREST = "interest"                        # Daily interest credit
    CD_MATURITY = "cd_maturity"                  # CD payout, both sides
    CD_EARLY_WITHDRAWAL = "cd_early_withdrawal"  # CD closed before maturity
    DONATION = "donation"                        # Donor side, and recipient side for agents
    WELCOME_BONUS = "welcome_bonus"


CREDIT_TYPES = frozenset({
    TransactionType.DEPOSIT,
    TransactionType.TRANSFER_IN,
    TransactionType.INTEREST,
    TransactionType.WELCOME_BONUS,
})

DEBIT_TYPES = frozenset({
    TransactionType.WITHDRAWAL,
    TransactionType.TRANSFER_OUT,
})

# Recorded on both the paying and the receiving account
TWO_SIDED_TYPES = frozenset({
    TransactionType.DONATION,
    TransactionType.CD_MATURITY,
})

MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 50


@dataclass
class Transaction(StorageRecord):
    """
    Single balance change on one account
    """
    account_id: str
    transaction_type: TransactionType
    amount: Money                    # Always positive
    balance_after: Money
    sequence: int = 0                # Store-wide tie-breaker for ordering
    related_account_id: Optional[str] = None
    counterparty_agent_id: Optional[str] = None
    counterparty_agent_name: Optional[str] = None
    memo: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def penalty(self) -> Money:
        """Penalty forfeited by an early CD withdrawal"""
        return Money.of(self.metadata.get('penalty', '0'))

    def to_response(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "type": self.transaction_type.value,
            "amount": self.amount.to_float(),
            "balance_after": self.balance_after.to_float(),
            "related_account_id": self.related_account_id,
            "counterparty_agent_id": self.counterparty_agent_id,
            "counterparty_agent_name": self.counterparty_agent_name,
            "description": self.memo,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class TransactionPage:
    """One page of an agent's transaction history"""
    transactions: List[Transaction]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.transactions) < self.total

    def to_response(self) -> Dict[str, Any]:
        return {
            "transactions": [t.to_response() for t in self.transactions],
            "pagination": {
                "total": self.total,
                "limit": self.limit,
                "offset": self.offset,
                "has_more": self.has_more,
            },
        }


class TransactionLog:
    """
    Appends and queries transaction records

    Writers call ``append`` from inside their own ``storage.atomic()`` block
    so the balance update and its record commit together.
    """

    def __init__(self, storage: StorageInterface, accounts_table: str = "accounts"):
        self.storage = storage
        self.table_name = "transactions"
        self.accounts_table = accounts_table
        self.logger = get_logger("agent_bank.transactions")

    def append(
        self,
        account_id: str,
        transaction_type: TransactionType,
        amount: Money,
        balance_after: Money,
        related_account_id: Optional[str] = None,
        counterparty_agent_id: Optional[str] = None,
        counterparty_agent_name: Optional[str] = None,
        memo: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        timestamp: Optional[datetime] = None
    ) -> Transaction:
        """
        Append a transaction record

        Args:
            account_id: Account whose balance changed
            transaction_type: Kind of change
            amount: Positive amount moved
            balance_after: Account balance once the change is applied
            related_account_id: The other account of a paired move
            counterparty_agent_id: Other agent for agent-to-agent moves
            counterparty_agent_name: Display name of that agent
            memo: Human readable description
            metadata: Extra structured data (e.g. early withdrawal penalty)
            timestamp: Creation time, defaults to now

        Returns:
            The stored Transaction
        """
        if not amount.is_positive():
            raise ValueError("Transaction amount must be positive")
        if balance_after.is_negative():
            raise LedgerIntegrityError("Transaction would leave a negative balance")

        now = timestamp or utc_now()
        with self.storage.atomic():
            transaction = Transaction(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                account_id=account_id,
                transaction_type=transaction_type,
                amount=amount,
                balance_after=balance_after,
                sequence=self.storage.count(self.table_name) + 1,
                related_account_id=related_account_id,
                counterparty_agent_id=counterparty_agent_id,
                counterparty_agent_name=counterparty_agent_name,
                memo=memo,
                metadata=dict(metadata or {})
            )
            self._save_transaction(transaction)

        self.logger.debug(
            f"Appended {transaction_type.value} of {amount} to account {account_id}"
        )
        return transaction

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        """Get transaction by ID"""
        transaction_dict = self.storage.load(self.table_name, transaction_id)
        if transaction_dict:
            return self._transaction_from_dict(transaction_dict)
        return None

    def get_account_transactions(
        self,
        account_id: str,
        limit: Optional[int] = None
    ) -> List[Transaction]:
        """Transactions for one account, most recent first"""
        transactions = self._history(account_id)
        transactions.reverse()
        if limit:
            transactions = transactions[:limit]
        return transactions

    def get_agent_transactions(
        self,
        agent_id: str,
        account_id: Optional[str] = None,
        transaction_type: Optional[TransactionType] = None,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0
    ) -> TransactionPage:
        """
        Paginated history across an agent's accounts, most recent first

        ``limit`` is clamped to 1..100 and ``offset`` to at least 0.
        Raises AccountNotFound when ``account_id`` is not owned by the agent.
        """
        limit = min(max(int(limit), 1), MAX_PAGE_SIZE)
        offset = max(int(offset), 0)

        owned = {
            data['id'] for data in self.storage.find(self.accounts_table, {'agent_id': agent_id})
        }
        if account_id is not None:
            if account_id not in owned:
                raise AccountNotFound()
            owned = {account_id}

        if isinstance(transaction_type, str):
            transaction_type = TransactionType(transaction_type)

        matching = [
            txn for txn in self._load_sorted()
            if txn.account_id in owned
            and (transaction_type is None or txn.transaction_type == transaction_type)
        ]
        matching.reverse()

        return TransactionPage(
            transactions=matching[offset:offset + limit],
            total=len(matching),
            limit=limit,
            offset=offset
        )

    def replay_balance(self, account_id: str) -> Money:
        """
        Rebuild an account balance from its history

        Returns:
            The final reconstructed balance

        Raises:
            LedgerIntegrityError: If any recorded balance_after disagrees
                with the replayed running balance
        """
        balance = Money.zero()
        for txn in self._history(account_id):
            balance = self._apply(balance, txn)
        return balance

    def total_interest_on(self, day: date) -> Money:
        """Sum of interest credited on a calendar day (UTC)"""
        total = Money.zero()
        for data in self.storage.find(self.table_name, {'transaction_type': TransactionType.INTEREST.value}):
            txn = self._transaction_from_dict(data)
            if txn.created_at.astimezone(timezone.utc).date() == day:
                total = total + txn.amount
        return total

    def _apply(self, balance: Money, txn: Transaction) -> Money:
        ttype = txn.transaction_type
        if ttype in CREDIT_TYPES:
            expected = balance + txn.amount
        elif ttype in DEBIT_TYPES:
            expected = balance - txn.amount
        elif ttype == TransactionType.CD_EARLY_WITHDRAWAL:
            expected = balance - txn.amount - txn.penalty
        elif balance + txn.amount == txn.balance_after:
            expected = balance + txn.amount
        else:
            expected = balance - txn.amount

        if expected != txn.balance_after or expected.is_negative():
            raise LedgerIntegrityError(
                f"Transaction {txn.id} on account {txn.account_id} records balance "
                f"{txn.balance_after} but replay gives {expected}"
            )
        return expected

    def _history(self, account_id: str) -> List[Transaction]:
        """Account history in chronological order"""
        records = self.storage.find(self.table_name, {'account_id': account_id})
        transactions = [self._transaction_from_dict(data) for data in records]
        transactions.sort(key=lambda t: (t.created_at, t.sequence))
        return transactions

    def _load_sorted(self) -> List[Transaction]:
        transactions = [self._transaction_from_dict(data) for data in self.storage.load_all(self.table_name)]
        transactions.sort(key=lambda t: (t.created_at, t.sequence))
        return transactions

    def _save_transaction(self, transaction: Transaction) -> None:
        """Save transaction to storage"""
        self.storage.save(self.table_name, transaction.id, transaction.to_dict())

    def _transaction_from_dict(self, data: Dict) -> Transaction:
        """Convert dictionary to Transaction"""
        return Transaction(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            account_id=data['account_id'],
            transaction_type=TransactionType(data['transaction_type']),
            amount=parse_money(data['amount']),
            balance_after=parse_money(data['balance_after']),
            sequence=int(data.get('sequence', 0)),
            related_account_id=data.get('related_account_id'),
            counterparty_agent_id=data.get('counterparty_agent_id'),
            counterparty_agent_name=data.get('counterparty_agent_name'),
            memo=data.get('memo'),
            metadata=data.get('metadata') or {}
        )
