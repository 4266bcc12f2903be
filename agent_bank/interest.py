"""
Interest Engine Module

Handles daily interest accrual and crediting, the monthly withdrawal counter
reset, the CD maturity sweep and early CD withdrawal. Batch procedures are
re-runnable: a second run on the same day (or in the same month) changes
nothing.
"""

from decimal import Decimal, ROUND_DOWN
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any

from .money import Money, CENT
from .products import AccountType, get_cd_rate, add_months
from .storage import StorageInterface, utc_now
from .accounts import AccountManager, Account
from .agents import AgentManager
from .transactions import TransactionType
from .errors import (
    BankError, CDInactive, CDMatured, NoChecking, NotCDAccount
)
from .logging_config import get_logger, log_action


PENALTY_MONTHS = Decimal('3')
MONTHS_PER_YEAR = Decimal('12')
DAYS_PER_PROJECTION_MONTH = Decimal('30')
PROJECTION_PERIODS = {
    "one_month": 1,
    "three_months": 3,
    "six_months": 6,
    "twelve_months": 12,
}


@dataclass
class EarlyWithdrawalQuote:
    """
    Penalty calculation for closing a CD before maturity
    """
    cd_account_id: str
    cd_balance: Money
    principal: Money
    earned_interest: Money
    penalty: Money
    amount_after_penalty: Money
    completed: bool = False
    checking_balance: Optional[Money] = None

    def to_response(self) -> Dict[str, Any]:
        data = {
            "cd_account": self.cd_account_id,
            "cd_balance": self.cd_balance.to_float(),
            "principal": self.principal.to_float(),
            "earned_interest": self.earned_interest.to_float(),
            "penalty": self.penalty.to_float(),
            "amount_after_penalty": self.amount_after_penalty.to_float(),
            "preview": not self.completed,
        }
        if self.checking_balance is not None:
            data["checking_balance"] = self.checking_balance.to_float()
        return data


def calculate_early_withdrawal_penalty(balance: Money, principal: Money, annual_rate: Decimal) -> Money:
    """
    Penalty is three months of interest on the principal at the CD's stored
    rate, capped at the interest actually earned and never negative
    """
    earned = balance - principal
    three_months = principal.amount * (annual_rate / MONTHS_PER_YEAR) * PENALTY_MONTHS
    penalty = min(earned.amount, three_months)
    return Money(max(penalty, Decimal('0')))


class InterestEngine:
    """
    Runs interest and CD lifecycle procedures against the account ledger
    """

    def __init__(
        self,
        storage: StorageInterface,
        account_manager: AccountManager,
        agent_manager: Optional[AgentManager] = None,
        day_count: int = 365,
        fail_closed: bool = True
    ):
        self.storage = storage
        self.account_manager = account_manager
        self.agent_manager = agent_manager
        self.day_count = Decimal(day_count)
        self.fail_closed = fail_closed
        self.logger = get_logger("agent_bank.interest")

    def credit_daily_interest(self, as_of: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Accrue one day of interest on every active funded account

        Interest accrues with full precision into ``interest_accrued``; whole
        cents are credited as an interest transaction and the remainder is
        carried to the next run. A single day's credit can therefore differ
        from balance * rate / 365 rounded half-up: $100 in savings posts
        nothing on day one and $0.01 once the carry reaches a cent. Accounts
        already processed on the run date are skipped.

        Args:
            as_of: Run time, defaults to now (UTC)

        Returns:
            Dictionary with accounts_processed, accounts_credited and total_interest
        """
        now = as_of or utc_now()
        run_date = now.astimezone(timezone.utc).date()

        stats = {"accounts_processed": 0, "accounts_credited": 0, "total_interest": Money.zero(), "failed": 0}

        due = [
            account.id for account in self.account_manager.get_active_accounts()
            if account.balance.is_positive() and not self._credited_on(account, run_date)
        ]

        if self.fail_closed:
            with self.storage.atomic():
                for account_id in due:
                    self._accrue_account(account_id, now, run_date, stats)
        else:
            for account_id in due:
                try:
                    with self.storage.atomic():
                        self._accrue_account(account_id, now, run_date, stats)
                except BankError as e:
                    stats["failed"] += 1
                    log_action(
                        self.logger, "error", f"Interest accrual failed: {e.message}",
                        action="daily_interest", resource=account_id, exc_info=True
                    )

        log_action(
            self.logger, "info", "Daily interest run complete",
            action="daily_interest",
            extra={
                "run_date": run_date.isoformat(),
                "accounts_processed": stats["accounts_processed"],
                "accounts_credited": stats["accounts_credited"],
                "total_interest": str(stats["total_interest"]),
            }
        )
        return stats

    def _accrue_account(self, account_id: str, now: datetime, run_date, stats: Dict[str, Any]) -> None:
        account = self.account_manager.get_account(account_id, for_update=True)
        # Re-check on the locked row
        if (account is None or not account.is_active or not account.balance.is_positive()
                or self._credited_on(account, run_date)):
            return

        accrued = account.interest_accrued + account.balance.amount * account.interest_rate / self.day_count
        whole_cents = accrued.quantize(CENT, rounding=ROUND_DOWN)
        account.interest_accrued = accrued - whole_cents
        account.last_interest_credit = now

        if whole_cents > 0:
            interest = Money(whole_cents)
            account.total_interest_earned = account.total_interest_earned + interest
            self.account_manager.credit(
                account, interest, TransactionType.INTEREST, memo="Daily interest"
            )
            stats["accounts_credited"] += 1
            stats["total_interest"] = stats["total_interest"] + interest
        else:
            self.account_manager.save_account(account)
        stats["accounts_processed"] += 1

    @staticmethod
    def _credited_on(account: Account, run_date) -> bool:
        if account.last_interest_credit is None:
            return False
        return account.last_interest_credit.astimezone(timezone.utc).date() >= run_date

    def reset_monthly_withdrawals(self, as_of: Optional[datetime] = None) -> Dict[str, int]:
        """Zero withdrawal counters not yet reset in the current calendar month"""
        now = as_of or utc_now()
        month_start = now.astimezone(timezone.utc).replace(day=1, hour=0, minute=0, second=0, microsecond=0)

        reset = 0
        with self.storage.atomic():
            for snapshot in self.account_manager.get_active_accounts():
                if snapshot.withdrawal_limit is None:
                    continue
                if snapshot.last_withdrawal_reset is not None and snapshot.last_withdrawal_reset >= month_start:
                    continue
                account = self.account_manager.get_account(snapshot.id, for_update=True)
                account.withdrawals_this_month = 0
                account.last_withdrawal_reset = now
                self.account_manager.save_account(account)
                reset += 1

        log_action(
            self.logger, "info", "Monthly withdrawal reset complete",
            action="monthly_reset", extra={"accounts_reset": reset}
        )
        return {"accounts_reset": reset}

    def process_matured_cds(self, as_of: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Renew or close every active CD at or past its maturity date

        Auto-renewing CDs start a new term of the same length from now at the
        current rate for that term, with the balance as the new principal.
        Other CDs are closed and their full balance paid into checking. CDs
        whose owner has no active checking account are skipped.
        """
        now = as_of or utc_now()
        renewed: List[Dict[str, Any]] = []
        closed: List[Dict[str, Any]] = []
        skipped: List[Dict[str, Any]] = []

        with self.storage.atomic():
            for snapshot in self.account_manager.get_active_accounts():
                if snapshot.account_type != AccountType.CD or not snapshot.is_matured(now):
                    continue
                cd = self.account_manager.get_account(snapshot.id, for_update=True)
                detail = {
                    "id": cd.id,
                    "agent": self._agent_name(cd.agent_id),
                    "nickname": cd.nickname,
                    "balance": cd.balance.to_float(),
                }

                if cd.cd_auto_renew:
                    cd.interest_rate = get_cd_rate(cd.cd_term_months)
                    cd.cd_principal = cd.balance
                    cd.cd_maturity_date = add_months(now, cd.cd_term_months)
                    self.account_manager.save_account(cd)
                    renewed.append({**detail, "term_months": cd.cd_term_months})
                    continue

                checking = self.account_manager.get_checking_account(cd.agent_id, for_update=True)
                if checking is None:
                    skipped.append({**detail, "reason": NoChecking.code})
                    continue

                payout = cd.balance
                self.account_manager.close_account(
                    cd, TransactionType.CD_MATURITY, payout,
                    related_account_id=checking.id, memo="CD matured"
                )
                self.account_manager.credit(
                    checking, payout, TransactionType.CD_MATURITY,
                    related_account_id=cd.id, memo="CD maturity proceeds"
                )
                closed.append(detail)

        if skipped:
            log_action(
                self.logger, "warning", f"Skipped {len(skipped)} matured CDs without a checking account",
                action="process_cds", extra={"skipped": [s["id"] for s in skipped]}
            )
        log_action(
            self.logger, "info", "Matured CD processing complete",
            action="process_cds",
            extra={"renewed": len(renewed), "closed": len(closed), "skipped": len(skipped)}
        )
        return {
            "total_matured": len(renewed) + len(closed) + len(skipped),
            "renewed": renewed,
            "closed_and_transferred": closed,
            "skipped": skipped,
        }

    def preview_early_withdrawal(
        self,
        agent_id: str,
        account_id: str,
        as_of: Optional[datetime] = None
    ) -> EarlyWithdrawalQuote:
        """Penalty and payout for closing a CD now, without changing anything"""
        cd = self.account_manager.get_owned_account(agent_id, account_id)
        self._check_early_withdrawal(cd, as_of)
        return self._quote(cd)

    def early_withdraw(
        self,
        agent_id: str,
        account_id: str,
        confirm: bool = False,
        as_of: Optional[datetime] = None
    ) -> EarlyWithdrawalQuote:
        """
        Close a CD before maturity, paying balance minus penalty into checking

        Without ``confirm`` only a preview is returned. The forfeited penalty
        is recorded in the closing transaction's metadata.
        """
        if not confirm:
            return self.preview_early_withdrawal(agent_id, account_id, as_of)

        with self.storage.atomic():
            cd = self.account_manager.get_owned_account(agent_id, account_id, for_update=True)
            self._check_early_withdrawal(cd, as_of)
            quote = self._quote(cd)

            checking = self.account_manager.get_checking_account(agent_id, for_update=True)
            if checking is None:
                raise NoChecking()

            self.account_manager.close_account(
                cd, TransactionType.CD_EARLY_WITHDRAWAL, quote.amount_after_penalty,
                memo=f"Early withdrawal. Penalty: {quote.penalty.to_string()}",
                metadata={"penalty": str(quote.penalty), "principal": str(quote.principal)}
            )
            self.account_manager.credit(
                checking, quote.amount_after_penalty, TransactionType.TRANSFER_IN,
                related_account_id=cd.id, memo="CD early withdrawal proceeds"
            )

        quote.completed = True
        quote.checking_balance = checking.balance
        log_action(
            self.logger, "info", f"CD closed early with penalty {quote.penalty}",
            agent_id=agent_id, action="early_withdraw", resource=cd.id,
            extra={"amount_received": str(quote.amount_after_penalty)}
        )
        return quote

    def _check_early_withdrawal(self, cd: Account, as_of: Optional[datetime]) -> None:
        if not cd.is_cd:
            raise NotCDAccount("This operation is only for CD accounts")
        if not cd.is_active:
            raise CDInactive()
        if cd.is_matured(as_of):
            raise CDMatured()

    @staticmethod
    def _quote(cd: Account) -> EarlyWithdrawalQuote:
        principal = cd.cd_principal if cd.cd_principal is not None else cd.balance
        penalty = calculate_early_withdrawal_penalty(cd.balance, principal, cd.interest_rate)
        return EarlyWithdrawalQuote(
            cd_account_id=cd.id,
            cd_balance=cd.balance,
            principal=principal,
            earned_interest=cd.balance - principal,
            penalty=penalty,
            amount_after_penalty=cd.balance - penalty
        )

    def project_interest(self, agent_id: str, as_of: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Simple-interest projections for 1, 3, 6 and 12 months

        Assumes balances stay constant. CDs that do not auto-renew only earn
        until their maturity date.
        """
        now = as_of or utc_now()
        accounts = [a for a in self.account_manager.get_agent_accounts(agent_id) if a.is_active]

        totals = {period: Decimal('0') for period in PROJECTION_PERIODS}
        by_account = []
        current_total = Money.zero()

        for account in accounts:
            monthly_rate = account.interest_rate / MONTHS_PER_YEAR
            months_to_maturity = None
            if account.is_cd and account.cd_maturity_date is not None:
                days = Decimal((account.cd_maturity_date - now).total_seconds()) / Decimal(86400)
                months_to_maturity = max(Decimal('0'), days / DAYS_PER_PROJECTION_MONTH)

            projected = {}
            for period, months in PROJECTION_PERIODS.items():
                effective = Decimal(months)
                if months_to_maturity is not None and not account.cd_auto_renew:
                    effective = min(effective, months_to_maturity)
                interest = account.balance.amount * monthly_rate * effective
                totals[period] += interest
                projected[period] = Money(interest)

            current_total = current_total + account.balance
            by_account.append({
                "account_id": account.id,
                "type": account.account_type.value,
                "nickname": account.nickname,
                "current_balance": account.balance,
                "interest_rate": account.interest_rate,
                "projected_interest": projected,
                "cd_maturity": {
                    "date": account.cd_maturity_date.date().isoformat(),
                    "months_remaining": months_to_maturity.quantize(Decimal('0.1')),
                    "auto_renew": account.cd_auto_renew,
                } if months_to_maturity is not None else None,
            })

        return {
            "current_total_balance": current_total,
            "projected_interest": {p: Money(v) for p, v in totals.items()},
            "projected_balance": {p: Money(current_total.amount + v) for p, v in totals.items()},
            "by_account": by_account,
        }

    def list_cds(self, agent_id: str, as_of: Optional[datetime] = None) -> Dict[str, Any]:
        """An agent's CDs with maturity status, soonest maturity first"""
        now = as_of or utc_now()
        cds = [
            a for a in self.account_manager.get_agent_accounts(agent_id, include_closed=True)
            if a.is_cd
        ]
        cds.sort(key=lambda a: a.cd_maturity_date or now)

        listed = []
        for cd in cds:
            matured = cd.is_matured(now)
            days_left = None
            if cd.cd_maturity_date is not None:
                days_left = 0 if matured else -(-int((cd.cd_maturity_date - now).total_seconds()) // 86400)
            listed.append({
                "id": cd.id,
                "nickname": cd.nickname,
                "principal": cd.cd_principal or cd.balance,
                "current_balance": cd.balance,
                "interest_earned": cd.total_interest_earned,
                "interest_rate": cd.interest_rate,
                "term_months": cd.cd_term_months,
                "maturity_date": cd.cd_maturity_date,
                "days_until_maturity": days_left,
                "is_matured": matured,
                "auto_renew": cd.cd_auto_renew,
                "status": cd.status.value,
            })

        active = [c for c in listed if c["status"] == "active"]
        total_balance = Money.zero()
        for c in active:
            total_balance = total_balance + c["current_balance"]
        return {
            "cds": listed,
            "summary": {
                "total_cds": len(listed),
                "active_cds": len(active),
                "matured_cds": len([c for c in active if c["is_matured"]]),
                "total_balance": total_balance,
            },
        }

    def _agent_name(self, agent_id: str) -> Optional[str]:
        if self.agent_manager is None:
            return None
        agent = self.agent_manager.get_agent(agent_id)
        return agent.name if agent else None
