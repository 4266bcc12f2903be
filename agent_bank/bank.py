"""
AgentBank Facade Module

Wires the ledger components around one storage backend and exposes every
operation as a call returning an OperationResult. Typed ledger errors become
failure results carrying their stable code; anything unexpected is logged
with its traceback and reported as INTERNAL_ERROR without internal detail.
"""

import copy
from dataclasses import is_dataclass
from datetime import datetime, date
from decimal import Decimal
from enum import Enum
from functools import wraps
from typing import Dict, Optional, Any

from .config import AgentBankConfig, get_config
from .money import Money
from .storage import StorageInterface, create_storage, ensure_utc
from .transactions import TransactionLog, TransactionType
from .accounts import AccountManager, UNSET
from .agents import AgentManager
from .transfers import TransferEngine
from .interest import InterestEngine
from .goals import GoalManager
from .errors import (
    AccountNotFound, AgentInactive, AgentNotFound, BankError, InfrastructureError,
    InvalidType, LedgerIntegrityError, OperationResult
)
from .logging_config import get_logger, log_action


logger = get_logger("agent_bank.bank")


def to_plain(value: Any) -> Any:
    """Convert ledger values into plain response data"""
    if isinstance(value, Money):
        return value.to_float()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if hasattr(value, 'to_response'):
        return value.to_response()
    if isinstance(value, dict):
        return {k: to_plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_plain(v) for v in value]
    if is_dataclass(value):
        raise TypeError(f"No response form for {type(value).__name__}")
    return value


def bank_operation(action: str, failure_data: Optional[Dict[str, Any]] = None):
    """
    Decorator turning a facade method into an OperationResult producer

    Args:
        action: Action name used in logs
        failure_data: Payload attached to failure results (batch jobs
            report zero processed)
    """
    def decorator(func):
        @wraps(func)
        def wrapper(self, *args, **kwargs) -> OperationResult:
            try:
                return func(self, *args, **kwargs)
            except InfrastructureError as e:
                log_action(
                    logger, "error", f"{action} failed: {e.code}",
                    action=action, extra={"code": e.code}, exc_info=True
                )
                result = OperationResult.from_error(e)
            except BankError as e:
                log_action(
                    logger, "info", f"{action} rejected: {e.code}",
                    action=action, extra={"code": e.code, "error_message": e.message}
                )
                result = OperationResult.from_error(e)
            except Exception:
                log_action(
                    logger, "error", f"{action} failed with an unexpected error",
                    action=action, exc_info=True
                )
                result = OperationResult.internal_error(f"{action.replace('_', ' ').capitalize()} failed")
            if failure_data:
                result.data = copy.deepcopy(failure_data)
            return result
        return wrapper
    return decorator


class AgentBank:
    """
    Entry point to the ledger

    Every public method returns an OperationResult; none raise.
    """

    def __init__(
        self,
        storage: Optional[StorageInterface] = None,
        config: Optional[AgentBankConfig] = None
    ):
        self.config = config or get_config()
        self.storage = storage if storage is not None else create_storage(self.config)

        self.transactions = TransactionLog(self.storage)
        self.accounts = AccountManager(self.storage, self.transactions)
        self.agents = AgentManager(self.storage, self.accounts)
        self.transfers = TransferEngine(
            self.storage, self.accounts, self.agents,
            request_expiry_days=self.config.payment_request_expiry_days
        )
        self.interest = InterestEngine(
            self.storage, self.accounts, self.agents,
            day_count=self.config.interest_day_count,
            fail_closed=self.config.batch_fail_closed
        )
        self.goals = GoalManager(self.storage, self.accounts)

    def close(self) -> None:
        self.storage.close()

    # Agents

    @bank_operation("register")
    def register_agent(self, name, description=None, credential_hash=None) -> OperationResult:
        registration = self.agents.register_agent(name, description, credential_hash)
        bonus = registration.checking.balance
        return OperationResult.ok({
            "agent": registration.agent.to_response(),
            "account": registration.checking.to_response(),
            "welcome_bonus": bonus.to_float(),
        }, message=f"Welcome! You've been credited {bonus.to_string()} to start.")

    @bank_operation("get_agent")
    def get_agent(self, agent_id: str) -> OperationResult:
        agent = self.agents.require_agent(agent_id)
        summary = self.accounts.get_account_summary(agent_id)
        return OperationResult.ok({
            "agent": agent.to_response(),
            "net_worth": to_plain(summary["net_worth"]),
            "account_count": summary["account_count"],
        })

    @bank_operation("get_profile")
    def get_agent_profile(self, caller_id: str, name: str) -> OperationResult:
        """Public profile of an agent looked up by name"""
        agent = self.agents.find_by_name(name)
        if agent is None:
            raise AgentNotFound()
        if not agent.is_active:
            raise AgentInactive("Agent is not active")
        summary = self.accounts.get_account_summary(agent.id)
        donated = self.transfers.get_donations(agent.id)["made"]
        total_donated = Money.zero()
        for donation in donated:
            total_donated = total_donated + donation.amount
        return OperationResult.ok({
            "profile": {
                "name": agent.name,
                "description": agent.description,
                "is_verified": agent.is_claimed,
                "member_since": agent.created_at.isoformat(),
            },
            "finances": {
                "net_worth": to_plain(summary["net_worth"]),
                "total_interest_earned": to_plain(summary["total_interest_earned"]),
                "account_count": summary["account_count"],
            },
            "generosity": {
                "total_donated": total_donated.to_float(),
                "donation_count": len(donated),
            },
            "is_me": agent.id == caller_id,
        })

    @bank_operation("update_profile")
    def update_profile(self, agent_id: str, description=None, metadata=None) -> OperationResult:
        agent = self.agents.update_profile(agent_id, description=description, metadata=metadata)
        return OperationResult.ok({"agent": agent.to_response()}, message="Profile updated")

    @bank_operation("claim")
    def claim_agent(self, agent_id: str, owner_handle: str, owner_name=None) -> OperationResult:
        agent = self.agents.claim_agent(agent_id, owner_handle, owner_name)
        return OperationResult.ok({"agent": agent.to_response()}, message=f"Agent claimed by {owner_handle}")

    @bank_operation("deactivate")
    def deactivate_agent(self, agent_id: str) -> OperationResult:
        agent = self.agents.deactivate_agent(agent_id)
        return OperationResult.ok({"agent": agent.to_response()}, message="Agent deactivated")

    @bank_operation("heartbeat")
    def heartbeat(self, agent_id: str) -> OperationResult:
        self.agents.touch(agent_id)
        return OperationResult.ok({"status": "alive"})

    # Accounts

    @bank_operation("open_account")
    def open_account(self, agent_id: str, account_type, nickname=None, initial_deposit=0,
                     cd_term_months=None) -> OperationResult:
        account = self.accounts.open_account(
            agent_id, account_type, nickname=nickname,
            initial_deposit=initial_deposit, cd_term_months=cd_term_months
        )
        if account.is_cd:
            message = (f"CD opened! Matures on {account.cd_maturity_date.date().isoformat()}. "
                       f"Rate: {account.interest_rate * 100:.1f}% APY")
        else:
            message = f"{account.account_type.value.replace('_', ' ').title()} account opened"
        return OperationResult.ok({"account": account.to_response()}, message=message)

    @bank_operation("get_accounts")
    def get_accounts(self, agent_id: str, include_closed: bool = False) -> OperationResult:
        accounts = self.accounts.get_agent_accounts(agent_id, include_closed=include_closed)
        total = Money.zero()
        for account in accounts:
            total = total + account.balance
        return OperationResult.ok({
            "accounts": [a.to_response() for a in accounts],
            "total_balance": total.to_float(),
        })

    @bank_operation("get_account")
    def get_account(self, agent_id: str, account_id: str) -> OperationResult:
        account = self.accounts.get_owned_account(agent_id, account_id)
        recent = self.transactions.get_account_transactions(account.id, limit=10)
        data = account.to_response()
        data.update({
            "status": account.status.value,
            "cd_auto_renew": account.cd_auto_renew,
            "cd_principal": to_plain(account.cd_principal),
            "withdrawals_this_month": account.withdrawals_this_month,
            "withdrawal_limit": account.withdrawal_limit,
            "total_interest_earned": account.total_interest_earned.to_float(),
        })
        return OperationResult.ok({
            "account": data,
            "recent_transactions": [t.to_response() for t in recent],
        })

    @bank_operation("deposit")
    def deposit(self, agent_id: str, account_id: str, amount) -> OperationResult:
        receipt = self.accounts.deposit(agent_id, account_id, amount)
        target = receipt.destination
        return OperationResult.ok({
            "deposit": {
                "amount": receipt.amount.to_float(),
                "to_account": target.id,
                "to_account_type": target.account_type.value,
                "new_balance": target.balance.to_float(),
            },
            "checking_balance": receipt.source.balance.to_float(),
        }, message=f"Deposited {receipt.amount.to_string()} to {target.account_type.value} account")

    @bank_operation("withdraw")
    def withdraw(self, agent_id: str, account_id: str, amount) -> OperationResult:
        receipt = self.accounts.withdraw(agent_id, account_id, amount)
        source = receipt.source
        return OperationResult.ok({
            "withdrawal": {
                "amount": receipt.amount.to_float(),
                "from_account": source.id,
                "from_account_type": source.account_type.value,
                "new_balance": source.balance.to_float(),
            },
            "checking_balance": receipt.destination.balance.to_float(),
            "withdrawals_remaining": receipt.withdrawals_remaining,
        }, message=f"Withdrew {receipt.amount.to_string()} to checking")

    @bank_operation("update_settings")
    def update_account_settings(self, agent_id: str, account_id: str,
                                nickname=UNSET, cd_auto_renew=UNSET) -> OperationResult:
        account = self.accounts.update_settings(
            agent_id, account_id, nickname=nickname, cd_auto_renew=cd_auto_renew
        )
        data = account.to_response()
        data["cd_auto_renew"] = account.cd_auto_renew
        return OperationResult.ok({"account": data}, message="Account updated")

    @bank_operation("freeze_account")
    def freeze_account(self, account_id: str) -> OperationResult:
        account = self.accounts.freeze_account(account_id)
        return OperationResult.ok({"account_id": account.id, "status": account.status.value})

    @bank_operation("unfreeze_account")
    def unfreeze_account(self, account_id: str) -> OperationResult:
        account = self.accounts.unfreeze_account(account_id)
        return OperationResult.ok({"account_id": account.id, "status": account.status.value})

    @bank_operation("get_summary")
    def get_summary(self, agent_id: str) -> OperationResult:
        return OperationResult.ok(to_plain(self.accounts.get_account_summary(agent_id)))

    @bank_operation("get_transactions")
    def get_transactions(self, agent_id: str, account_id=None, transaction_type=None,
                         limit: int = 50, offset: int = 0) -> OperationResult:
        if transaction_type is not None and not isinstance(transaction_type, TransactionType):
            try:
                transaction_type = TransactionType(transaction_type)
            except ValueError:
                raise InvalidType("Invalid transaction type")
        page = self.transactions.get_agent_transactions(
            agent_id, account_id=account_id, transaction_type=transaction_type,
            limit=limit, offset=offset
        )
        return OperationResult.ok(page.to_response())

    @bank_operation("verify_account")
    def verify_account(self, account_id: str) -> OperationResult:
        """Replay an account's history and compare it with the stored balance"""
        account = self.accounts.get_account(account_id)
        if account is None:
            raise AccountNotFound()
        replayed = self.transactions.replay_balance(account_id)
        if replayed != account.balance:
            raise LedgerIntegrityError(
                f"Stored balance {account.balance} differs from replayed balance {replayed}"
            )
        return OperationResult.ok({"account_id": account_id, "balance": replayed.to_float()})

    # Transfers

    @bank_operation("internal_transfer")
    def internal_transfer(self, agent_id: str, from_account_id: str, to_account_id: str,
                          amount) -> OperationResult:
        receipt = self.transfers.internal_transfer(agent_id, from_account_id, to_account_id, amount)
        return OperationResult.ok({
            "transfer": {
                "from_account": receipt.source.id,
                "to_account": receipt.destination.id,
                "amount": receipt.amount.to_float(),
                "from_new_balance": receipt.source.balance.to_float(),
                "to_new_balance": receipt.destination.balance.to_float(),
            },
        }, message=f"Transferred {receipt.amount.to_string()} successfully")

    @bank_operation("transfer_to_agent")
    def transfer_to_agent(self, agent_id: str, to_agent_name: str, amount, memo=None,
                          from_account_id=None) -> OperationResult:
        receipt = self.transfers.transfer_to_agent(
            agent_id, to_agent_name, amount, memo=memo, from_account_id=from_account_id
        )
        recipient_name = receipt.debit_transaction.counterparty_agent_name
        return OperationResult.ok({
            "transfer": {
                "id": receipt.debit_transaction.id,
                "to_agent": recipient_name,
                "amount": receipt.amount.to_float(),
                "memo": memo,
                "timestamp": receipt.debit_transaction.created_at.isoformat(),
            },
            "new_balance": receipt.source.balance.to_float(),
        }, message=f"Sent {receipt.amount.to_string()} to {recipient_name}")

    @bank_operation("donate")
    def donate(self, agent_id: str, amount, to_agent=None, to_name=None, message=None) -> OperationResult:
        receipt = self.transfers.donate(agent_id, amount, to_agent=to_agent, to_name=to_name, message=message)
        donation = receipt.donation
        return OperationResult.ok({
            "donation": {
                "id": donation.id,
                "to": receipt.recipient_name,
                "to_type": donation.to_type,
                "amount": donation.amount.to_float(),
                "message": donation.message,
            },
            "new_balance": receipt.donor_account.balance.to_float(),
        }, message=f"Donated {donation.amount.to_string()} to {receipt.recipient_name}. "
                   f"Thank you for your generosity!")

    @bank_operation("get_donations")
    def get_donations(self, agent_id: str) -> OperationResult:
        donations = self.transfers.get_donations(agent_id)

        def row(d):
            return {
                "id": d.id,
                "from_agent_id": d.from_agent_id,
                "to_agent_id": d.to_agent_id,
                "to_name": d.to_name,
                "amount": d.amount.to_float(),
                "message": d.message,
                "created_at": d.created_at.isoformat(),
            }

        return OperationResult.ok({
            "made": [row(d) for d in donations["made"]],
            "received": [row(d) for d in donations["received"]],
        })

    @bank_operation("donation_leaderboard")
    def get_donation_leaderboard(self, limit: int = 10) -> OperationResult:
        ranked = self.transfers.get_donation_totals()[:max(int(limit), 1)]
        return OperationResult.ok({"leaderboard": to_plain(ranked)})

    # Payment requests

    @bank_operation("request_payment")
    def request_payment(self, agent_id: str, to_agent_name: str, amount, reason=None) -> OperationResult:
        request = self.transfers.request_payment(agent_id, to_agent_name, amount, reason)
        payer = self.agents.get_agent(request.to_agent_id)
        return OperationResult.ok({
            "request": self._request_row(request, to_agent=payer.name),
        }, message=f"Payment request sent to {payer.name} for {request.amount.to_string()}")

    @bank_operation("approve_request")
    def approve_request(self, request_id: str, approver_id: str) -> OperationResult:
        receipt = self.transfers.approve_request(request_id, approver_id)
        paid_to = receipt.debit_transaction.counterparty_agent_name
        return OperationResult.ok({
            "approved": {
                "request_id": request_id,
                "paid_to": paid_to,
                "amount": receipt.amount.to_float(),
            },
            "new_balance": receipt.source.balance.to_float(),
        }, message=f"Paid {receipt.amount.to_string()} to {paid_to}")

    @bank_operation("reject_request")
    def reject_request(self, request_id: str, approver_id: str) -> OperationResult:
        outcome = self.transfers.reject_request(request_id, approver_id)
        request = outcome["request"]
        requester = self.agents.get_agent(request.from_agent_id)
        name = requester.name if requester else None
        if outcome["was_expired"]:
            message = f"Request from {name} was already expired but has been marked as rejected"
        else:
            message = f"Rejected payment request from {name}"
        return OperationResult.ok({
            "rejected": {
                "request_id": request.id,
                "from_agent": name,
                "amount": request.amount.to_float(),
                "reason": request.reason,
            },
            "was_expired": outcome["was_expired"],
        }, message=message)

    @bank_operation("list_requests")
    def list_requests(self, agent_id: str, direction: str = "incoming", include_all: bool = False) -> OperationResult:
        requests = self.transfers.list_requests(agent_id, direction, include_all)
        rows = []
        for request in requests:
            from_agent = self.agents.get_agent(request.from_agent_id)
            to_agent = self.agents.get_agent(request.to_agent_id)
            rows.append(self._request_row(
                request,
                from_agent=from_agent.name if from_agent else None,
                to_agent=to_agent.name if to_agent else None
            ))
        return OperationResult.ok({"requests": rows, "type": direction, "count": len(rows)})

    @staticmethod
    def _request_row(request, **names) -> Dict[str, Any]:
        row = {
            "id": request.id,
            "amount": request.amount.to_float(),
            "reason": request.reason,
            "status": request.status.value,
            "created_at": request.created_at.isoformat(),
            "expires_at": request.expires_at.isoformat(),
            "hours_remaining": request.hours_remaining(),
            "responded_at": request.responded_at.isoformat() if request.responded_at else None,
        }
        row.update(names)
        return row

    # Interest and CDs

    @bank_operation("list_cds")
    def list_cds(self, agent_id: str) -> OperationResult:
        return OperationResult.ok(to_plain(self.interest.list_cds(agent_id)))

    @bank_operation("early_withdraw")
    def early_withdraw(self, agent_id: str, account_id: str, confirm: bool = False, as_of=None) -> OperationResult:
        quote = self.interest.early_withdraw(agent_id, account_id, confirm=confirm, as_of=ensure_utc(as_of))
        if not quote.completed:
            message = (
                f"Early withdrawal penalty: {quote.penalty.to_string()} (3 months interest or all earned "
                f"interest, whichever is less). You will receive {quote.amount_after_penalty.to_string()}. "
                f"Confirm to proceed."
            )
        else:
            message = (
                f"CD closed early. Penalty of {quote.penalty.to_string()} applied. "
                f"{quote.amount_after_penalty.to_string()} transferred to checking."
            )
        return OperationResult.ok(quote.to_response(), message=message)

    @bank_operation("project_interest")
    def project_interest(self, agent_id: str, as_of=None) -> OperationResult:
        return OperationResult.ok(to_plain(self.interest.project_interest(agent_id, ensure_utc(as_of))))

    # Goals

    @bank_operation("create_goal")
    def create_goal(self, agent_id: str, name, target_amount, target_date=None,
                    linked_account_id=None) -> OperationResult:
        goal = self.goals.create_goal(agent_id, name, target_amount, target_date, linked_account_id)
        return OperationResult.ok(
            {"goal": goal.to_response()},
            message=f'Goal "{goal.name}" created! Target: {goal.target_amount.to_string()}'
        )

    @bank_operation("update_goal")
    def update_goal(self, agent_id: str, goal_id: str, name=UNSET, current_amount=UNSET,
                    status=UNSET) -> OperationResult:
        goal = self.goals.update_goal(agent_id, goal_id, name=name, current_amount=current_amount, status=status)
        if goal.status.value == "completed":
            message = f'Congratulations! Goal "{goal.name}" completed!'
        else:
            message = "Goal updated successfully"
        return OperationResult.ok({"goal": goal.to_response()}, message=message)

    @bank_operation("list_goals")
    def list_goals(self, agent_id: str, status=None) -> OperationResult:
        return OperationResult.ok(to_plain(self.goals.list_goals(agent_id, status)))

    # Batch procedures

    @bank_operation("daily_interest", failure_data={
        "accounts_processed": 0, "accounts_credited": 0, "total_interest": 0.0
    })
    def credit_daily_interest(self, as_of=None) -> OperationResult:
        stats = self.interest.credit_daily_interest(ensure_utc(as_of))
        return OperationResult.ok(to_plain(stats), message="Daily interest credited successfully")

    @bank_operation("monthly_reset", failure_data={"accounts_reset": 0})
    def reset_monthly_withdrawals(self, as_of=None) -> OperationResult:
        stats = self.interest.reset_monthly_withdrawals(ensure_utc(as_of))
        return OperationResult.ok(stats, message="Monthly withdrawal counters reset successfully")

    @bank_operation("process_cds", failure_data={
        "total_matured": 0, "renewed": [], "closed_and_transferred": [], "skipped": []
    })
    def process_matured_cds(self, as_of=None) -> OperationResult:
        stats = self.interest.process_matured_cds(ensure_utc(as_of))
        return OperationResult.ok(stats, message="Matured CDs processed successfully")
