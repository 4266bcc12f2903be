"""
Product Definitions Module

Static product tables for the account types the bank offers: interest rates,
monthly withdrawal limits, opening minimums, CD terms and transfer caps.
These values are part of the external contract.
"""

import calendar
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, Optional

from .money import Money
from .errors import InvalidCDTerm, InvalidType


class AccountType(Enum):
    """Account product types"""
    CHECKING = "checking"          # Hub account, unlimited withdrawals
    SAVINGS = "savings"            # 6 withdrawals per month
    MONEY_MARKET = "money_market"  # 3 withdrawals per month
    CD = "cd"                      # Locked until maturity

    @classmethod
    def parse(cls, value) -> 'AccountType':
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise InvalidType()


# Annual percentage yields
INTEREST_RATES: Dict[str, Decimal] = {
    "checking": Decimal('0.005'),
    "savings": Decimal('0.035'),
    "money_market": Decimal('0.045'),
    "cd_3": Decimal('0.05'),
    "cd_6": Decimal('0.055'),
    "cd_12": Decimal('0.06'),
}

# Withdrawals per calendar month, None = unlimited
WITHDRAWAL_LIMITS: Dict[str, Optional[int]] = {
    "checking": None,
    "savings": 6,
    "money_market": 3,
    "cd": 0,
}

MIN_BALANCES: Dict[str, Money] = {
    "checking": Money(Decimal('0')),
    "savings": Money(Decimal('100')),
    "money_market": Money(Decimal('2500')),
    "cd": Money(Decimal('500')),
}

WELCOME_BONUS = Money(Decimal('10000.00'))

# Per-transaction cap for agent transfers, donations and payment requests
MAX_TRANSFER_AMOUNT = Money(Decimal('10000'))

CD_TERMS = (3, 6, 12)

# Account types an agent may send money to another agent from
AGENT_TRANSFER_SOURCES = (AccountType.CHECKING, AccountType.SAVINGS, AccountType.MONEY_MARKET)


def validate_cd_term(term_months) -> int:
    """Return the term as int or raise InvalidCDTerm"""
    if isinstance(term_months, bool) or term_months not in CD_TERMS:
        raise InvalidCDTerm()
    return int(term_months)


def get_cd_rate(term_months: int) -> Decimal:
    """Current CD rate for a term, re-read on every renewal"""
    return INTEREST_RATES[f"cd_{validate_cd_term(term_months)}"]


def get_interest_rate(account_type: AccountType, cd_term_months: Optional[int] = None) -> Decimal:
    if account_type == AccountType.CD:
        return get_cd_rate(cd_term_months)
    return INTEREST_RATES[account_type.value]


def get_withdrawal_limit(account_type: AccountType) -> Optional[int]:
    return WITHDRAWAL_LIMITS[account_type.value]


def get_minimum_balance(account_type: AccountType) -> Money:
    return MIN_BALANCES[account_type.value]


def add_months(moment: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the end of the target month"""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)
