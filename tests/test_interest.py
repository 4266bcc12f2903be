"""
Test suite for interest module

Tests daily accrual with sub-cent carry, re-run idempotency, the monthly
withdrawal reset, the CD maturity sweep and early CD withdrawal penalties.
All calculations must be exact to the cent.
"""

import pytest
from decimal import Decimal
from datetime import timedelta

from agent_bank.money import Money
from agent_bank.storage import InMemoryStorage, utc_now
from agent_bank.transactions import TransactionLog, TransactionType
from agent_bank.accounts import AccountManager, AccountStatus
from agent_bank.agents import AgentManager
from agent_bank.transfers import TransferEngine
from agent_bank.interest import InterestEngine, calculate_early_withdrawal_penalty
from agent_bank.products import add_months
from agent_bank.errors import (
    CDInactive, CDMatured, ConcurrentModification, NotCDAccount, WithdrawalLimitReached
)


class TestEarlyWithdrawalPenalty:
    """Penalty is three months of interest, capped at interest earned"""

    @pytest.mark.parametrize("earned, penalty, payout", [
        ("200", "150", "10050"),
        ("50", "50", "10000"),
        ("0", "0", "10000"),
    ])
    def test_penalty_cases(self, earned, penalty, payout):
        principal = Money.of("10000")
        balance = principal + Money.of(earned)
        result = calculate_early_withdrawal_penalty(balance, principal, Decimal("0.06"))
        assert result == Money.of(penalty)
        assert balance - result == Money.of(payout)

    def test_penalty_never_negative(self):
        result = calculate_early_withdrawal_penalty(Money.of("900"), Money.of("1000"), Decimal("0.05"))
        assert result.is_zero()


class PoisonedStorage(InMemoryStorage):
    """Hands out a stale version of one account on locked reads"""

    poisoned = None

    def load_for_update(self, table, record_id):
        data = super().load_for_update(table, record_id)
        if data is not None and record_id == self.poisoned:
            data["version"] = int(data["version"]) - 1
        return data


class InterestTestBase:

    storage_class = InMemoryStorage

    def setup_method(self):
        self.storage = self.storage_class()
        self.transaction_log = TransactionLog(self.storage)
        self.account_manager = AccountManager(self.storage, self.transaction_log)
        self.agent_manager = AgentManager(self.storage, self.account_manager)
        self.transfers = TransferEngine(self.storage, self.account_manager, self.agent_manager)
        self.engine = InterestEngine(self.storage, self.account_manager, self.agent_manager)

        registration = self.agent_manager.register_agent("interest_bot")
        self.agent_id = registration.agent.id
        self.checking_id = registration.checking.id
        self.now = utc_now()

    def account(self, account_id):
        return self.account_manager.get_account(account_id)


class TestDailyInterest(InterestTestBase):

    def test_credits_whole_cents_and_carries_remainder(self):
        savings = self.account_manager.open_account(self.agent_id, "savings", initial_deposit=1000)

        stats = self.engine.credit_daily_interest(self.now)

        # 1000 * 0.035 / 365 = 0.09589..., 9000 * 0.005 / 365 = 0.12328...
        savings = self.account(savings.id)
        assert savings.balance == Money.of("1000.09")
        assert savings.interest_accrued == Decimal("1000") * Decimal("0.035") / Decimal("365") - Decimal("0.09")
        assert self.account(self.checking_id).balance == Money.of("9000.12")
        assert stats["accounts_processed"] == 2
        assert stats["accounts_credited"] == 2
        assert stats["total_interest"] == Money.of("0.21")

    def test_rerun_on_same_day_changes_nothing(self):
        self.engine.credit_daily_interest(self.now)
        before = self.account(self.checking_id)

        stats = self.engine.credit_daily_interest(self.now + timedelta(minutes=5))

        assert stats["accounts_processed"] == 0
        assert self.account(self.checking_id).balance == before.balance
        assert self.storage.count("transactions") == 2

    def test_next_day_uses_carried_remainder(self):
        savings = self.account_manager.open_account(self.agent_id, "savings", initial_deposit=1000)
        self.engine.credit_daily_interest(self.now)
        self.engine.credit_daily_interest(self.now + timedelta(days=1))

        # 0.00589 carried + 1000.09 * 0.035 / 365 = 0.10179...
        assert self.account(savings.id).balance == Money.of("1000.19")
        assert self.account(savings.id).total_interest_earned == Money.of("0.19")
        assert self.transaction_log.replay_balance(savings.id) == Money.of("1000.19")

    def test_sub_cent_interest_accrues_without_transaction(self):
        savings = self.account_manager.open_account(self.agent_id, "savings", initial_deposit=100)
        self.account_manager.withdraw(self.agent_id, savings.id, "99.99")

        self.engine.credit_daily_interest(self.now)

        account = self.account(savings.id)
        assert account.balance == Money.of("0.01")
        assert account.interest_accrued > 0
        assert account.last_interest_credit == self.now
        interest = [t for t in self.transaction_log.get_account_transactions(savings.id)
                    if t.transaction_type == TransactionType.INTEREST]
        assert interest == []

    def test_skips_empty_accounts(self):
        self.account_manager.open_account(self.agent_id, "checking")
        stats = self.engine.credit_daily_interest(self.now)
        assert stats["accounts_processed"] == 1

    def test_total_interest_on_day(self):
        self.engine.credit_daily_interest(self.now)
        # Interest records are stamped with the wall clock
        assert self.transaction_log.total_interest_on(utc_now().date()) == Money.of("0.13")


class TestMonthlyReset(InterestTestBase):

    def test_resets_once_per_month(self):
        savings = self.account_manager.open_account(self.agent_id, "savings", initial_deposit=500)
        for _ in range(6):
            self.account_manager.withdraw(self.agent_id, savings.id, 1)
        with pytest.raises(WithdrawalLimitReached):
            self.account_manager.withdraw(self.agent_id, savings.id, 1)

        # Same month as opening: nothing to reset
        assert self.engine.reset_monthly_withdrawals(self.now)["accounts_reset"] == 0

        next_month = add_months(self.now, 1)
        assert self.engine.reset_monthly_withdrawals(next_month)["accounts_reset"] == 1
        assert self.engine.reset_monthly_withdrawals(next_month)["accounts_reset"] == 0
        assert self.account(savings.id).withdrawals_this_month == 0

        self.account_manager.withdraw(self.agent_id, savings.id, 1)


class TestCDLifecycle(InterestTestBase):

    def open_cd(self, amount=1000, term=12, auto_renew=False):
        cd = self.account_manager.open_account(
            self.agent_id, "cd", initial_deposit=amount, cd_term_months=term
        )
        if auto_renew:
            cd = self.account_manager.update_settings(self.agent_id, cd.id, cd_auto_renew=True)
        return cd

    def add_interest(self, cd_id, amount):
        with self.storage.atomic():
            cd = self.account_manager.get_account(cd_id, for_update=True)
            cd.total_interest_earned = cd.total_interest_earned + Money.of(amount)
            self.account_manager.credit(cd, Money.of(amount), TransactionType.INTEREST)

    def test_matured_cd_is_closed_into_checking(self):
        cd = self.open_cd()
        self.add_interest(cd.id, "60")
        after_maturity = add_months(self.now, 12) + timedelta(days=1)

        result = self.engine.process_matured_cds(after_maturity)

        assert result["total_matured"] == 1
        assert result["closed_and_transferred"][0]["id"] == cd.id
        assert result["closed_and_transferred"][0]["agent"] == "interest_bot"
        closed = self.account(cd.id)
        assert closed.status == AccountStatus.CLOSED
        assert closed.balance.is_zero()
        assert self.account(self.checking_id).balance == Money.of("10060")

        for account_id in (cd.id, self.checking_id):
            assert self.transaction_log.replay_balance(account_id) == self.account(account_id).balance

        # Closed CDs are not picked up again
        assert self.engine.process_matured_cds(after_maturity)["total_matured"] == 0

    def test_unmatured_cd_is_left_alone(self):
        self.open_cd(term=3)
        result = self.engine.process_matured_cds(self.now + timedelta(days=30))
        assert result["total_matured"] == 0

    def test_auto_renew_starts_new_term(self):
        cd = self.open_cd(term=6, auto_renew=True)
        self.add_interest(cd.id, "25")
        run_at = add_months(self.now, 6) + timedelta(hours=1)

        result = self.engine.process_matured_cds(run_at)

        assert result["renewed"][0]["term_months"] == 6
        renewed = self.account(cd.id)
        assert renewed.status == AccountStatus.ACTIVE
        assert renewed.cd_principal == Money.of("1025")
        assert renewed.interest_rate == Decimal("0.055")
        assert renewed.cd_maturity_date == add_months(run_at, 6)

    def test_cd_without_checking_is_skipped(self):
        cd = self.open_cd()
        self.account_manager.freeze_account(self.checking_id)

        result = self.engine.process_matured_cds(add_months(self.now, 13))

        assert result["skipped"][0]["reason"] == "NO_CHECKING"
        assert self.account(cd.id).status == AccountStatus.ACTIVE

    def test_early_withdrawal_preview_then_confirm(self):
        cd = self.open_cd(amount=1000, term=12)
        self.add_interest(cd.id, "20")

        # 1000 * 0.06 / 12 * 3 = 15 < 20 earned
        preview = self.engine.early_withdraw(self.agent_id, cd.id)
        assert not preview.completed
        assert preview.penalty == Money.of("15")
        assert preview.amount_after_penalty == Money.of("1005")
        assert self.account(cd.id).is_active

        quote = self.engine.early_withdraw(self.agent_id, cd.id, confirm=True)
        assert quote.completed
        assert quote.checking_balance == Money.of("10005")

        closed = self.account(cd.id)
        assert closed.status == AccountStatus.CLOSED
        closing = self.transaction_log.get_account_transactions(closed.id, limit=1)[0]
        assert closing.transaction_type == TransactionType.CD_EARLY_WITHDRAWAL
        assert closing.penalty == Money.of("15")
        assert self.transaction_log.replay_balance(cd.id).is_zero()

        with pytest.raises(CDInactive):
            self.engine.early_withdraw(self.agent_id, cd.id, confirm=True)

    def test_early_withdrawal_rules(self):
        cd = self.open_cd(term=3)
        with pytest.raises(NotCDAccount):
            self.engine.preview_early_withdrawal(self.agent_id, self.checking_id)
        with pytest.raises(CDMatured):
            self.engine.preview_early_withdrawal(self.agent_id, cd.id, as_of=add_months(self.now, 4))

    def test_matured_cd_cannot_be_transferred_out(self):
        cd = self.open_cd(term=3)
        stored = self.account(cd.id)
        stored.cd_maturity_date = self.now - timedelta(days=1)
        with self.storage.atomic():
            self.account_manager.save_account(stored)

        with pytest.raises(WithdrawalLimitReached):
            self.transfers.internal_transfer(self.agent_id, cd.id, self.checking_id, 10)

    def test_list_cds_and_projection(self):
        cd = self.open_cd(amount=1200, term=12)

        listed = self.engine.list_cds(self.agent_id, self.now)
        assert listed["summary"]["active_cds"] == 1
        assert listed["cds"][0]["id"] == cd.id
        assert not listed["cds"][0]["is_matured"]

        projection = self.engine.project_interest(self.agent_id, self.now)
        # 1200 * 0.06 / 12 = 6.00 per month on the CD
        cd_entry = [a for a in projection["by_account"] if a["account_id"] == cd.id][0]
        assert cd_entry["projected_interest"]["one_month"] == Money.of("6")
        assert projection["current_total_balance"] == Money.of("10000")


class TestBatchFailureModes(InterestTestBase):

    storage_class = PoisonedStorage

    def test_fail_closed_rolls_back_whole_run(self):
        savings = self.account_manager.open_account(self.agent_id, "savings", initial_deposit=1000)
        self.corrupt_version(savings.id)

        with pytest.raises(ConcurrentModification):
            self.engine.credit_daily_interest(self.now)
        assert self.account(self.checking_id).balance == Money.of("9000")

    def test_per_account_mode_reports_failures(self):
        engine = InterestEngine(self.storage, self.account_manager, fail_closed=False)
        savings = self.account_manager.open_account(self.agent_id, "savings", initial_deposit=1000)
        self.corrupt_version(savings.id)

        stats = engine.credit_daily_interest(self.now)

        assert stats["failed"] == 1
        assert stats["accounts_credited"] == 1
        assert self.account(self.checking_id).balance == Money.of("9000.12")

    def corrupt_version(self, account_id):
        self.storage.poisoned = account_id
