"""
Account Management Module

Manages account records and is the only writer of account balances. Every
balance change goes through ``credit``, ``debit`` or ``close_account``, which
save the account with an optimistic version check and append the matching
transaction in the same unit of work.

Checking is the hub: deposits into other accounts are funded from checking
and withdrawals from them land back in checking.
"""

from decimal import Decimal
from datetime import datetime
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .money import Money
from .products import (
    AccountType, validate_cd_term, get_interest_rate, get_withdrawal_limit,
    get_minimum_balance, add_months
)
from .storage import (
    StorageInterface, StorageRecord, parse_datetime, parse_money, parse_decimal, utc_now
)
from .transactions import Transaction, TransactionLog, TransactionType
from .errors import (
    AccountNotFound, AccountInactive, CDNoDeposit, CDNoWithdraw, ConcurrentModification,
    InsufficientFunds, InvalidAmount, MinBalanceRequired, NoCheckingAccount, NotCDAccount,
    SameAccount, UseTransfer, WithdrawalLimitReached
)
from .logging_config import get_logger, log_action


class AccountStatus(Enum):
    """Account lifecycle states"""
    ACTIVE = "active"
    CLOSED = "closed"    # Terminal, balance is zero
    FROZEN = "frozen"    # Temporarily blocked


# Sentinel for optional settings that were not supplied
UNSET = object()


@dataclass
class Account(StorageRecord):
    """
    Agent-owned account holding a single balance
    """
    agent_id: str
    account_type: AccountType
    balance: Money
    interest_rate: Decimal                      # Annual rate as a fraction
    nickname: Optional[str] = None
    cd_term_months: Optional[int] = None
    cd_maturity_date: Optional[datetime] = None
    cd_auto_renew: bool = False
    cd_principal: Optional[Money] = None
    withdrawals_this_month: int = 0
    withdrawal_limit: Optional[int] = None      # None = unlimited
    last_withdrawal_reset: Optional[datetime] = None
    status: AccountStatus = AccountStatus.ACTIVE
    interest_accrued: Decimal = Decimal('0')    # Sub-cent interest not yet credited
    total_interest_earned: Money = Money.zero()
    last_interest_credit: Optional[datetime] = None
    version: int = 0
    closed_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE

    @property
    def is_cd(self) -> bool:
        return self.account_type == AccountType.CD

    @property
    def is_checking(self) -> bool:
        return self.account_type == AccountType.CHECKING

    def is_matured(self, as_of: Optional[datetime] = None) -> bool:
        """Check whether a CD has reached its maturity date"""
        if not self.is_cd or self.cd_maturity_date is None:
            return False
        return self.cd_maturity_date <= (as_of or utc_now())

    @property
    def withdrawals_remaining(self) -> Optional[int]:
        if self.withdrawal_limit is None:
            return None
        return max(self.withdrawal_limit - self.withdrawals_this_month, 0)

    def to_response(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.account_type.value,
            "nickname": self.nickname,
            "balance": self.balance.to_float(),
            "interest_rate": float(self.interest_rate),
            "cd_term_months": self.cd_term_months,
            "cd_maturity_date": self.cd_maturity_date.isoformat() if self.cd_maturity_date else None,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class MoveReceipt:
    """Outcome of moving money between two accounts"""
    amount: Money
    source: Account
    destination: Account
    debit_transaction: Transaction
    credit_transaction: Transaction

    @property
    def withdrawals_remaining(self) -> Optional[int]:
        return self.source.withdrawals_remaining


class AccountManager:
    """
    Manages account lifecycle and balance mutations
    """

    def __init__(self, storage: StorageInterface, transaction_log: TransactionLog):
        self.storage = storage
        self.transaction_log = transaction_log
        self.accounts_table = "accounts"
        self.logger = get_logger("agent_bank.accounts")

    def open_account(
        self,
        agent_id: str,
        account_type,
        nickname: Optional[str] = None,
        initial_deposit=0,
        cd_term_months: Optional[int] = None
    ) -> Account:
        """
        Open a new account, optionally funded from the agent's checking account

        Args:
            agent_id: Owner of the new account
            account_type: AccountType or its string value
            nickname: Optional display name
            initial_deposit: Opening balance, moved out of checking
            cd_term_months: Required for CDs, one of 3, 6 or 12

        Returns:
            Created Account object
        """
        account_type = AccountType.parse(account_type)
        term = validate_cd_term(cd_term_months) if account_type == AccountType.CD else None

        deposit = Money.parse(initial_deposit)
        if deposit.is_negative():
            raise InvalidAmount("Initial deposit cannot be negative")

        minimum = get_minimum_balance(account_type)
        if deposit < minimum:
            raise MinBalanceRequired(
                f"Minimum opening balance for {account_type.value} is {minimum.to_string()}"
            )

        now = utc_now()
        with self.storage.atomic():
            checking = None
            if deposit.is_positive():
                checking = self._require_checking(agent_id)
                if checking.balance < deposit:
                    raise InsufficientFunds(
                        f"Insufficient funds in checking. Available: {checking.balance.to_string()}"
                    )

            account = Account(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                agent_id=agent_id,
                account_type=account_type,
                balance=Money.zero(),
                interest_rate=get_interest_rate(account_type, term),
                nickname=nickname,
                cd_term_months=term,
                cd_maturity_date=add_months(now, term) if term else None,
                cd_principal=deposit if term else None,
                withdrawal_limit=get_withdrawal_limit(account_type),
                last_withdrawal_reset=now
            )
            self._save_account(account)

            if checking is not None:
                self.debit(
                    checking, deposit, TransactionType.WITHDRAWAL,
                    related_account_id=account.id,
                    memo=f"Transfer to new {account_type.value} account"
                )
                self.credit(
                    account, deposit, TransactionType.DEPOSIT,
                    related_account_id=checking.id,
                    memo="Initial deposit"
                )

        log_action(
            self.logger, "info", f"Opened {account_type.value} account",
            agent_id=agent_id, action="open_account", resource=account.id,
            extra={"initial_deposit": str(deposit), "cd_term_months": term}
        )
        return account

    def deposit(self, agent_id: str, account_id: str, amount) -> MoveReceipt:
        """Move funds from checking into another of the agent's accounts"""
        amount = self._positive_amount(amount)

        with self.storage.atomic():
            target = self.get_owned_account(agent_id, account_id, for_update=True)
            if not target.is_active:
                raise AccountInactive()
            if target.is_cd:
                raise CDNoDeposit()

            checking = self._require_checking(agent_id)
            if checking.id == target.id:
                raise SameAccount("Cannot deposit into checking from itself")
            if checking.balance < amount:
                raise InsufficientFunds("Insufficient funds in checking account")

            debit_txn = self.debit(
                checking, amount, TransactionType.TRANSFER_OUT,
                related_account_id=target.id,
                memo=f"Deposit to {target.account_type.value} account"
            )
            credit_txn = self.credit(
                target, amount, TransactionType.TRANSFER_IN,
                related_account_id=checking.id,
                memo="Deposit from checking"
            )

        log_action(
            self.logger, "info", f"Deposited {amount} into {target.account_type.value} account",
            agent_id=agent_id, action="deposit", resource=target.id
        )
        return MoveReceipt(amount, checking, target, debit_txn, credit_txn)

    def withdraw(self, agent_id: str, account_id: str, amount) -> MoveReceipt:
        """
        Move funds from a savings or money market account back to checking

        The receipt's ``withdrawals_remaining`` reports how many withdrawals
        are left this month (None when unlimited).
        """
        amount = self._positive_amount(amount)

        with self.storage.atomic():
            source = self.get_owned_account(agent_id, account_id, for_update=True)
            if not source.is_active:
                raise AccountInactive()
            if source.is_cd:
                raise CDNoWithdraw()
            if source.is_checking:
                raise UseTransfer()

            self._check_withdrawal_limit(source)
            if source.balance < amount:
                raise InsufficientFunds(f"Insufficient funds. Available: {source.balance.to_string()}")

            checking = self._require_checking(agent_id)

            source.withdrawals_this_month += 1
            debit_txn = self.debit(
                source, amount, TransactionType.WITHDRAWAL,
                related_account_id=checking.id,
                memo="Withdrawal to checking"
            )
            credit_txn = self.credit(
                checking, amount, TransactionType.TRANSFER_IN,
                related_account_id=source.id,
                memo=f"Withdrawal from {source.account_type.value}"
            )

        log_action(
            self.logger, "info", f"Withdrew {amount} from {source.account_type.value} account",
            agent_id=agent_id, action="withdraw", resource=source.id,
            extra={"withdrawals_this_month": source.withdrawals_this_month}
        )
        return MoveReceipt(amount, source, checking, debit_txn, credit_txn)

    def update_settings(
        self,
        agent_id: str,
        account_id: str,
        nickname=UNSET,
        cd_auto_renew=UNSET
    ) -> Account:
        """Update nickname and, for CDs, the auto-renew flag"""
        with self.storage.atomic():
            account = self.get_owned_account(agent_id, account_id, for_update=True)

            if cd_auto_renew is not UNSET:
                if not account.is_cd:
                    raise NotCDAccount("Auto-renew only applies to CD accounts")
                account.cd_auto_renew = bool(cd_auto_renew)
            if nickname is not UNSET:
                account.nickname = nickname or None

            self._save_account(account)

        log_action(
            self.logger, "info", "Updated account settings",
            agent_id=agent_id, action="update_settings", resource=account.id
        )
        return account

    def freeze_account(self, account_id: str) -> Account:
        return self._set_status(account_id, AccountStatus.FROZEN, from_status=AccountStatus.ACTIVE)

    def unfreeze_account(self, account_id: str) -> Account:
        return self._set_status(account_id, AccountStatus.ACTIVE, from_status=AccountStatus.FROZEN)

    def _set_status(self, account_id: str, status: AccountStatus, from_status: AccountStatus) -> Account:
        with self.storage.atomic():
            account = self.get_account(account_id, for_update=True)
            if account is None:
                raise AccountNotFound()
            if account.status != from_status:
                raise AccountInactive(f"Account is {account.status.value}")
            account.status = status
            self._save_account(account)

        log_action(
            self.logger, "warning", f"Account status changed to {status.value}",
            agent_id=account.agent_id, action="set_status", resource=account.id
        )
        return account

    # Balance mutation primitives

    def credit(
        self,
        account: Account,
        amount: Money,
        transaction_type: TransactionType,
        **details: Any
    ) -> Transaction:
        """
        Increase an account balance and record the transaction

        ``account`` must have been loaded inside the caller's unit of work;
        a stale copy fails the version check.
        """
        if not amount.is_positive():
            raise InvalidAmount()
        with self.storage.atomic():
            if not account.is_active:
                raise AccountInactive()
            account.balance = account.balance + amount
            self._save_account(account)
            return self.transaction_log.append(
                account.id, transaction_type, amount, account.balance, **details
            )

    def debit(
        self,
        account: Account,
        amount: Money,
        transaction_type: TransactionType,
        **details: Any
    ) -> Transaction:
        """Decrease an account balance and record the transaction"""
        if not amount.is_positive():
            raise InvalidAmount()
        with self.storage.atomic():
            if not account.is_active:
                raise AccountInactive()
            if account.balance < amount:
                raise InsufficientFunds()
            account.balance = account.balance - amount
            self._save_account(account)
            return self.transaction_log.append(
                account.id, transaction_type, amount, account.balance, **details
            )

    def close_account(
        self,
        account: Account,
        transaction_type: TransactionType,
        payout: Money,
        **details: Any
    ) -> Transaction:
        """
        Zero and close an account, recording the payout

        ``payout`` is what leaves the account; any difference to the balance
        must be carried in ``metadata['penalty']`` so replay still balances.
        """
        with self.storage.atomic():
            if not account.is_active:
                raise AccountInactive()
            penalty = Money.of(details.get('metadata', {}).get('penalty', '0'))
            if payout + penalty != account.balance:
                raise ValueError("Payout and penalty must add up to the closing balance")

            now = utc_now()
            account.balance = Money.zero()
            account.status = AccountStatus.CLOSED
            account.closed_at = now
            self._save_account(account)
            return self.transaction_log.append(
                account.id, transaction_type, payout, account.balance, **details
            )

    def save_account(self, account: Account) -> None:
        """Persist non-balance changes to an account loaded in the current unit of work"""
        self._save_account(account)

    # Queries

    def get_account(self, account_id: str, for_update: bool = False) -> Optional[Account]:
        """Get account by ID"""
        if for_update:
            account_dict = self.storage.load_for_update(self.accounts_table, account_id)
        else:
            account_dict = self.storage.load(self.accounts_table, account_id)
        if account_dict:
            return self._account_from_dict(account_dict)
        return None

    def get_owned_account(self, agent_id: str, account_id: str, for_update: bool = False) -> Account:
        """Load an account the agent owns, foreign accounts look missing"""
        account = self.get_account(account_id, for_update=for_update)
        if account is None or account.agent_id != agent_id:
            raise AccountNotFound()
        return account

    def get_agent_accounts(self, agent_id: str, include_closed: bool = False) -> List[Account]:
        """All accounts of an agent, oldest first"""
        accounts = [
            self._account_from_dict(data)
            for data in self.storage.find(self.accounts_table, {'agent_id': agent_id})
        ]
        if not include_closed:
            accounts = [a for a in accounts if a.status != AccountStatus.CLOSED]
        accounts.sort(key=lambda a: a.created_at)
        return accounts

    def get_checking_account(self, agent_id: str, for_update: bool = False) -> Optional[Account]:
        """The agent's primary (oldest active) checking account"""
        candidates = [
            self._account_from_dict(data)
            for data in self.storage.find(self.accounts_table, {
                'agent_id': agent_id,
                'account_type': AccountType.CHECKING.value,
                'status': AccountStatus.ACTIVE.value,
            })
        ]
        if not candidates:
            return None
        checking = min(candidates, key=lambda a: a.created_at)
        if for_update:
            return self.get_account(checking.id, for_update=True)
        return checking

    def get_active_accounts(self) -> List[Account]:
        """Every active account in the bank, used by batch jobs"""
        return [
            self._account_from_dict(data)
            for data in self.storage.find(self.accounts_table, {'status': AccountStatus.ACTIVE.value})
        ]

    def get_account_summary(self, agent_id: str) -> Dict[str, Any]:
        """Net worth, interest earned and per-type breakdown of active accounts"""
        accounts = self.get_agent_accounts(agent_id)
        accounts = [a for a in accounts if a.is_active]

        breakdown: Dict[str, Dict[str, Any]] = {}
        net_worth = Money.zero()
        total_interest = Money.zero()
        for account in accounts:
            entry = breakdown.setdefault(account.account_type.value, {
                "count": 0, "balance": Money.zero(), "interest_earned": Money.zero()
            })
            entry["count"] += 1
            entry["balance"] = entry["balance"] + account.balance
            entry["interest_earned"] = entry["interest_earned"] + account.total_interest_earned
            net_worth = net_worth + account.balance
            total_interest = total_interest + account.total_interest_earned

        checking_balance = breakdown.get("checking", {}).get("balance", Money.zero())
        savings_rate = Decimal('0')
        if net_worth.is_positive():
            savings_rate = ((net_worth - checking_balance).amount / net_worth.amount * 100).quantize(Decimal('0.1'))

        return {
            "net_worth": net_worth,
            "total_interest_earned": total_interest,
            "account_count": len(accounts),
            "accounts": breakdown,
            "savings_rate_percent": savings_rate,
        }

    # Internal helpers

    def _require_checking(self, agent_id: str) -> Account:
        checking = self.get_checking_account(agent_id, for_update=True)
        if checking is None:
            raise NoCheckingAccount()
        return checking

    def _check_withdrawal_limit(self, account: Account) -> None:
        limit = account.withdrawal_limit
        if limit is not None and account.withdrawals_this_month >= limit:
            raise WithdrawalLimitReached(
                f"Monthly withdrawal limit reached ({limit} per month)"
            )

    @staticmethod
    def _positive_amount(amount) -> Money:
        amount = Money.parse(amount)
        if not amount.is_positive():
            raise InvalidAmount()
        return amount

    def _save_account(self, account: Account) -> None:
        """Save account to storage, rejecting stale copies"""
        with self.storage.atomic():
            stored = self.storage.load(self.accounts_table, account.id)
            if stored is not None and int(stored.get('version', 0)) != account.version:
                raise ConcurrentModification(
                    f"Account {account.id} changed since it was loaded"
                )
            account.version += 1
            account.updated_at = utc_now()
            self.storage.save(self.accounts_table, account.id, account.to_dict())

    def _account_from_dict(self, data: Dict) -> Account:
        """Convert dictionary to Account"""
        return Account(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            agent_id=data['agent_id'],
            account_type=AccountType(data['account_type']),
            balance=parse_money(data['balance']),
            interest_rate=parse_decimal(data['interest_rate']),
            nickname=data.get('nickname'),
            cd_term_months=data.get('cd_term_months'),
            cd_maturity_date=parse_datetime(data.get('cd_maturity_date')),
            cd_auto_renew=bool(data.get('cd_auto_renew', False)),
            cd_principal=parse_money(data.get('cd_principal')),
            withdrawals_this_month=int(data.get('withdrawals_this_month', 0)),
            withdrawal_limit=data.get('withdrawal_limit'),
            last_withdrawal_reset=parse_datetime(data.get('last_withdrawal_reset')),
            status=AccountStatus(data['status']),
            interest_accrued=parse_decimal(data.get('interest_accrued', '0')),
            total_interest_earned=parse_money(data.get('total_interest_earned', '0')),
            last_interest_credit=parse_datetime(data.get('last_interest_credit')),
            version=int(data.get('version', 0)),
            closed_at=parse_datetime(data.get('closed_at'))
        )
