"""
Tests for product tables and calendar helpers
"""

import pytest
from datetime import datetime, timezone
from decimal import Decimal

from agent_bank.products import (
    AccountType, add_months, get_cd_rate, get_interest_rate, get_minimum_balance,
    get_withdrawal_limit, validate_cd_term
)
from agent_bank.money import Money
from agent_bank.errors import InvalidCDTerm, InvalidType


class TestProducts:

    def test_rates_and_limits(self):
        assert get_interest_rate(AccountType.CHECKING) == Decimal("0.005")
        assert get_interest_rate(AccountType.MONEY_MARKET) == Decimal("0.045")
        assert get_interest_rate(AccountType.CD, 3) == Decimal("0.05")
        assert get_cd_rate(12) == Decimal("0.06")
        assert get_withdrawal_limit(AccountType.CHECKING) is None
        assert get_withdrawal_limit(AccountType.SAVINGS) == 6
        assert get_minimum_balance(AccountType.CD) == Money.of("500")

    @pytest.mark.parametrize("term", [0, 1, 24, None, "6", True])
    def test_invalid_cd_terms(self, term):
        with pytest.raises(InvalidCDTerm):
            validate_cd_term(term)

    def test_parse_account_type(self):
        assert AccountType.parse("money_market") == AccountType.MONEY_MARKET
        with pytest.raises(InvalidType):
            AccountType.parse("crypto")


class TestAddMonths:

    def test_plain_months(self):
        start = datetime(2025, 3, 15, 9, 30, tzinfo=timezone.utc)
        assert add_months(start, 3) == datetime(2025, 6, 15, 9, 30, tzinfo=timezone.utc)

    def test_crosses_year(self):
        start = datetime(2025, 11, 1, tzinfo=timezone.utc)
        assert add_months(start, 12) == datetime(2026, 11, 1, tzinfo=timezone.utc)
        assert add_months(start, 3) == datetime(2026, 2, 1, tzinfo=timezone.utc)

    def test_clamps_to_month_end(self):
        start = datetime(2024, 1, 31, tzinfo=timezone.utc)
        assert add_months(start, 1) == datetime(2024, 2, 29, tzinfo=timezone.utc)
        assert add_months(datetime(2025, 8, 31, tzinfo=timezone.utc), 6) == datetime(2026, 2, 28, tzinfo=timezone.utc)
