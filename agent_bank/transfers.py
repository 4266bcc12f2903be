"""
Transfer Engine Module

Moves money between accounts: internal transfers between an agent's own
accounts, transfers and donations to other agents (or causes) and the
payment request lifecycle. Each move re-loads and re-validates every
account it touches inside a single unit of work.
"""

from datetime import datetime, timedelta
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .money import Money
from .products import MAX_TRANSFER_AMOUNT, AGENT_TRANSFER_SOURCES
from .storage import StorageInterface, StorageRecord, parse_datetime, parse_money, utc_now
from .accounts import AccountManager, Account, MoveReceipt
from .agents import AgentManager
from .transactions import TransactionType
from .errors import (
    AccountNotFound, AlreadyResponded, AmountTooLarge, CDNotMatured, ConflictingRecipient,
    DuplicateRequest, InsufficientFunds, InvalidAmount, InvalidDestination, MissingRecipient,
    NoCheckingAccount, NoRecipientAccount, NotYourRequest, RequestExpired, RequestNotFound,
    SameAccount, SelfDonation, SelfRequest, SelfTransfer, WithdrawalLimitReached
)
from .logging_config import get_logger, log_action


class RequestStatus(Enum):
    """Payment request states"""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


class RequestDirection(Enum):
    INCOMING = "incoming"   # Others asking this agent for money
    OUTGOING = "outgoing"   # This agent asking others


@dataclass
class PaymentRequest(StorageRecord):
    """
    Request from one agent asking another to pay it
    """
    from_agent_id: str       # Requester, receives the funds
    to_agent_id: str         # Payer
    amount: Money
    expires_at: datetime
    reason: Optional[str] = None
    status: RequestStatus = RequestStatus.PENDING
    responded_at: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        return self.status == RequestStatus.PENDING

    def is_expired(self, as_of: Optional[datetime] = None) -> bool:
        return self.expires_at <= (as_of or utc_now())

    def hours_remaining(self, as_of: Optional[datetime] = None) -> Optional[int]:
        if not self.is_pending:
            return None
        seconds = (self.expires_at - (as_of or utc_now())).total_seconds()
        return max(0, -(-int(seconds) // 3600))


@dataclass
class Donation(StorageRecord):
    """
    Donation history entry, to an agent or to a named cause
    """
    from_agent_id: str
    amount: Money
    to_agent_id: Optional[str] = None
    to_name: Optional[str] = None      # Cause name, None for agent donations
    message: Optional[str] = None

    @property
    def to_type(self) -> str:
        return "agent" if self.to_agent_id else "cause"


@dataclass
class DonationReceipt:
    donation: Donation
    recipient_name: str
    donor_account: Account


class TransferEngine:
    """
    Executes money movements between accounts and agents
    """

    def __init__(
        self,
        storage: StorageInterface,
        account_manager: AccountManager,
        agent_manager: AgentManager,
        request_expiry_days: int = 7
    ):
        self.storage = storage
        self.account_manager = account_manager
        self.agent_manager = agent_manager
        self.request_expiry = timedelta(days=request_expiry_days)
        self.requests_table = "payment_requests"
        self.donations_table = "donations"
        self.logger = get_logger("agent_bank.transfers")

    def internal_transfer(
        self,
        agent_id: str,
        from_account_id: str,
        to_account_id: str,
        amount
    ) -> MoveReceipt:
        """
        Move funds between two of the agent's own accounts

        Savings and money market sources count against their monthly
        withdrawal limit. CDs cannot be a destination.
        """
        amount = self._positive_amount(amount)
        if from_account_id == to_account_id:
            raise SameAccount()

        with self.storage.atomic():
            source = self._active_owned(agent_id, from_account_id, "Source account not found")
            if source.is_cd and not source.is_matured():
                raise CDNotMatured(
                    "Cannot withdraw from CD before maturity. Use early withdrawal instead."
                )
            limit = source.withdrawal_limit
            if limit is not None and source.withdrawals_this_month >= limit:
                raise WithdrawalLimitReached(f"Monthly withdrawal limit reached ({limit} per month)")
            if source.balance < amount:
                raise InsufficientFunds()

            destination = self._active_owned(agent_id, to_account_id, "Destination account not found")
            if destination.is_cd:
                raise InvalidDestination()

            if limit is not None:
                source.withdrawals_this_month += 1
            debit_txn = self.account_manager.debit(
                source, amount, TransactionType.TRANSFER_OUT,
                related_account_id=destination.id, memo="Internal transfer"
            )
            credit_txn = self.account_manager.credit(
                destination, amount, TransactionType.TRANSFER_IN,
                related_account_id=source.id, memo="Internal transfer"
            )

        log_action(
            self.logger, "info", f"Internal transfer of {amount}",
            agent_id=agent_id, action="internal_transfer", resource=source.id,
            extra={"to_account": destination.id}
        )
        return MoveReceipt(amount, source, destination, debit_txn, credit_txn)

    def transfer_to_agent(
        self,
        agent_id: str,
        to_agent_name: str,
        amount,
        memo: Optional[str] = None,
        from_account_id: Optional[str] = None
    ) -> MoveReceipt:
        """
        Send money to another agent's checking account

        The source defaults to the sender's checking account; an explicit
        source must be a checking, savings or money market account.
        """
        amount = self._capped_amount(amount, "Maximum transfer amount is $10,000 per transaction")
        sender = self.agent_manager.require_agent(agent_id)

        with self.storage.atomic():
            recipient = self.agent_manager.resolve_recipient(agent_id, to_agent_name, SelfTransfer)

            if from_account_id:
                source = self.account_manager.get_account(from_account_id, for_update=True)
                if (source is None or source.agent_id != agent_id or not source.is_active
                        or source.account_type not in AGENT_TRANSFER_SOURCES):
                    raise AccountNotFound("Source account not found or not eligible for transfers")
            else:
                source = self.account_manager.get_checking_account(agent_id, for_update=True)
                if source is None:
                    raise AccountNotFound("Source account not found or not eligible for transfers")

            if source.balance < amount:
                raise InsufficientFunds()

            destination = self.account_manager.get_checking_account(recipient.id, for_update=True)
            if destination is None:
                raise NoRecipientAccount()

            debit_txn = self.account_manager.debit(
                source, amount, TransactionType.TRANSFER_OUT,
                counterparty_agent_id=recipient.id,
                counterparty_agent_name=recipient.name,
                memo=memo
            )
            credit_txn = self.account_manager.credit(
                destination, amount, TransactionType.TRANSFER_IN,
                counterparty_agent_id=sender.id,
                counterparty_agent_name=sender.name,
                memo=memo
            )

        log_action(
            self.logger, "info", f"Sent {amount} to {recipient.name}",
            agent_id=agent_id, action="transfer_out", resource=source.id,
            extra={"to_agent": recipient.name, "to_agent_id": recipient.id}
        )
        return MoveReceipt(amount, source, destination, debit_txn, credit_txn)

    def donate(
        self,
        agent_id: str,
        amount,
        to_agent: Optional[str] = None,
        to_name: Optional[str] = None,
        message: Optional[str] = None
    ) -> DonationReceipt:
        """
        Donate from checking to another agent or to a named cause

        Cause donations only debit the donor; the money leaves the ledger.
        """
        if not to_agent and not to_name:
            raise MissingRecipient(
                "Must specify either to_agent (agent name) or to_name (charity/cause)"
            )
        if to_agent and to_name:
            raise ConflictingRecipient()
        amount = self._capped_amount(amount, "Maximum donation amount is $10,000")
        donor = self.agent_manager.require_agent(agent_id)

        now = utc_now()
        with self.storage.atomic():
            recipient = None
            recipient_name = to_name
            if to_agent:
                recipient = self.agent_manager.resolve_recipient(agent_id, to_agent, SelfDonation)
                recipient_name = recipient.name

            donor_checking = self.account_manager.get_checking_account(agent_id, for_update=True)
            if donor_checking is None:
                raise NoCheckingAccount()

            recipient_checking = None
            if recipient is not None:
                recipient_checking = self.account_manager.get_checking_account(recipient.id, for_update=True)
                if recipient_checking is None:
                    raise NoRecipientAccount()

            if donor_checking.balance < amount:
                raise InsufficientFunds()

            self.account_manager.debit(
                donor_checking, amount, TransactionType.DONATION,
                counterparty_agent_id=recipient.id if recipient else None,
                counterparty_agent_name=recipient_name,
                memo=f"Donation: {message}" if message else f"Donation to {recipient_name}"
            )
            if recipient_checking is not None:
                self.account_manager.credit(
                    recipient_checking, amount, TransactionType.DONATION,
                    counterparty_agent_id=donor.id,
                    counterparty_agent_name=donor.name,
                    memo=f"Donation received: {message}" if message else f"Donation from {donor.name}"
                )

            donation = Donation(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                from_agent_id=agent_id,
                amount=amount,
                to_agent_id=recipient.id if recipient else None,
                to_name=None if recipient else to_name,
                message=message
            )
            self.storage.save(self.donations_table, donation.id, donation.to_dict())

        log_action(
            self.logger, "info", f"Donated {amount} to {recipient_name}",
            agent_id=agent_id, action="donate", resource=donation.id,
            extra={"to_type": donation.to_type}
        )
        return DonationReceipt(donation=donation, recipient_name=recipient_name, donor_account=donor_checking)

    def get_donations(self, agent_id: str) -> Dict[str, List[Donation]]:
        """Donations made and received by an agent, most recent first"""
        records = [self._donation_from_dict(d) for d in self.storage.load_all(self.donations_table)]
        records.sort(key=lambda d: d.created_at, reverse=True)
        return {
            "made": [d for d in records if d.from_agent_id == agent_id],
            "received": [d for d in records if d.to_agent_id == agent_id],
        }

    def get_donation_totals(self) -> List[Dict[str, Any]]:
        """Total donated per agent, most generous first"""
        totals: Dict[str, Dict[str, Any]] = {}
        for data in self.storage.load_all(self.donations_table):
            donation = self._donation_from_dict(data)
            entry = totals.setdefault(donation.from_agent_id, {
                "agent_id": donation.from_agent_id,
                "total_donated": Money.zero(),
                "donation_count": 0,
            })
            entry["total_donated"] = entry["total_donated"] + donation.amount
            entry["donation_count"] += 1

        ranked = sorted(totals.values(), key=lambda e: e["total_donated"].amount, reverse=True)
        for rank, entry in enumerate(ranked, start=1):
            agent = self.agent_manager.get_agent(entry["agent_id"])
            entry["name"] = agent.name if agent else None
            entry["rank"] = rank
        return ranked

    # Payment requests

    def request_payment(
        self,
        agent_id: str,
        to_agent_name: str,
        amount,
        reason: Optional[str] = None
    ) -> PaymentRequest:
        """Ask another agent to pay this agent"""
        if not to_agent_name or not isinstance(to_agent_name, str):
            raise MissingRecipient("Recipient agent name is required")
        amount = self._capped_amount(amount, "Maximum request amount is $10,000")

        now = utc_now()
        with self.storage.atomic():
            payer = self.agent_manager.resolve_recipient(agent_id, to_agent_name, SelfRequest)

            for existing in self._requests_between(agent_id, payer.id):
                if existing.is_pending and not existing.is_expired(now):
                    raise DuplicateRequest()

            request = PaymentRequest(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                from_agent_id=agent_id,
                to_agent_id=payer.id,
                amount=amount,
                expires_at=now + self.request_expiry,
                reason=reason
            )
            self._save_request(request)

        log_action(
            self.logger, "info", f"Payment request sent to {payer.name}",
            agent_id=agent_id, action="request_payment", resource=request.id,
            extra={"amount": str(amount)}
        )
        return request

    def approve_request(self, request_id: str, approver_id: str) -> MoveReceipt:
        """
        Pay a pending request from the approver's checking account

        An expired request is marked expired (and stays so) before
        RequestExpired is raised.
        """
        expired = False
        with self.storage.atomic():
            request = self._load_addressed_request(request_id, approver_id)
            if request.is_expired():
                request.status = RequestStatus.EXPIRED
                self._save_request(request)
                expired = True
            else:
                receipt = self._pay_request(request, approver_id)

        if expired:
            log_action(
                self.logger, "info", "Payment request expired on approval",
                agent_id=approver_id, action="approve_request", resource=request_id
            )
            raise RequestExpired()

        log_action(
            self.logger, "info", f"Approved payment request for {request.amount}",
            agent_id=approver_id, action="approve_request", resource=request_id
        )
        return receipt

    def _pay_request(self, request: PaymentRequest, approver_id: str) -> MoveReceipt:
        payer = self.agent_manager.require_agent(approver_id)
        requester = self.agent_manager.require_agent(request.from_agent_id)

        payer_checking = self.account_manager.get_checking_account(approver_id, for_update=True)
        if payer_checking is None:
            raise NoCheckingAccount()
        if payer_checking.balance < request.amount:
            raise InsufficientFunds("Insufficient funds to approve this request")

        requester_checking = self.account_manager.get_checking_account(requester.id, for_update=True)
        if requester_checking is None:
            raise NoRecipientAccount("Requester has no active checking account")

        reason = request.reason or "No reason provided"
        debit_txn = self.account_manager.debit(
            payer_checking, request.amount, TransactionType.TRANSFER_OUT,
            counterparty_agent_id=requester.id,
            counterparty_agent_name=requester.name,
            memo=f"Payment request approved: {reason}"
        )
        credit_txn = self.account_manager.credit(
            requester_checking, request.amount, TransactionType.TRANSFER_IN,
            counterparty_agent_id=payer.id,
            counterparty_agent_name=payer.name,
            memo=f"Payment request fulfilled: {reason}"
        )

        request.status = RequestStatus.APPROVED
        request.responded_at = utc_now()
        self._save_request(request)
        return MoveReceipt(request.amount, payer_checking, requester_checking, debit_txn, credit_txn)

    def reject_request(self, request_id: str, approver_id: str) -> Dict[str, Any]:
        """
        Reject a pending request, even one that has already expired

        Returns:
            Dict with the rejected ``request`` and ``was_expired``
        """
        with self.storage.atomic():
            request = self._load_addressed_request(request_id, approver_id)
            was_expired = request.is_expired()
            request.status = RequestStatus.REJECTED
            request.responded_at = utc_now()
            self._save_request(request)

        log_action(
            self.logger, "info", "Rejected payment request",
            agent_id=approver_id, action="reject_request", resource=request_id,
            extra={"was_expired": was_expired}
        )
        return {"request": request, "was_expired": was_expired}

    def get_request(self, request_id: str) -> Optional[PaymentRequest]:
        data = self.storage.load(self.requests_table, request_id)
        if data:
            return self._request_from_dict(data)
        return None

    def list_requests(
        self,
        agent_id: str,
        direction=RequestDirection.INCOMING,
        include_all: bool = False
    ) -> List[PaymentRequest]:
        """
        Requests addressed to (incoming) or sent by (outgoing) an agent

        Without ``include_all`` only pending, unexpired requests are listed.
        """
        direction = RequestDirection(direction) if not isinstance(direction, RequestDirection) else direction
        key = 'to_agent_id' if direction == RequestDirection.INCOMING else 'from_agent_id'
        requests = [
            self._request_from_dict(data)
            for data in self.storage.find(self.requests_table, {key: agent_id})
        ]
        if not include_all:
            now = utc_now()
            requests = [r for r in requests if r.is_pending and not r.is_expired(now)]
        requests.sort(key=lambda r: r.created_at, reverse=True)
        return requests

    # Internal helpers

    def _active_owned(self, agent_id: str, account_id: str, message: str) -> Account:
        account = self.account_manager.get_account(account_id, for_update=True)
        if account is None or account.agent_id != agent_id or not account.is_active:
            raise AccountNotFound(message)
        return account

    def _load_addressed_request(self, request_id: str, approver_id: str) -> PaymentRequest:
        data = self.storage.load_for_update(self.requests_table, request_id)
        if data is None:
            raise RequestNotFound()
        request = self._request_from_dict(data)
        if request.to_agent_id != approver_id:
            raise NotYourRequest()
        if not request.is_pending:
            raise AlreadyResponded(f"This request has already been {request.status.value}")
        return request

    def _requests_between(self, from_agent_id: str, to_agent_id: str) -> List[PaymentRequest]:
        return [
            self._request_from_dict(data)
            for data in self.storage.find(self.requests_table, {
                'from_agent_id': from_agent_id,
                'to_agent_id': to_agent_id,
            })
        ]

    @staticmethod
    def _positive_amount(amount) -> Money:
        amount = Money.parse(amount)
        if not amount.is_positive():
            raise InvalidAmount()
        return amount

    def _capped_amount(self, amount, message: str) -> Money:
        amount = self._positive_amount(amount)
        if amount > MAX_TRANSFER_AMOUNT:
            raise AmountTooLarge(message)
        return amount

    def _save_request(self, request: PaymentRequest) -> None:
        request.updated_at = utc_now()
        self.storage.save(self.requests_table, request.id, request.to_dict())

    def _request_from_dict(self, data: Dict) -> PaymentRequest:
        """Convert dictionary to PaymentRequest"""
        return PaymentRequest(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            from_agent_id=data['from_agent_id'],
            to_agent_id=data['to_agent_id'],
            amount=parse_money(data['amount']),
            expires_at=parse_datetime(data['expires_at']),
            reason=data.get('reason'),
            status=RequestStatus(data['status']),
            responded_at=parse_datetime(data.get('responded_at'))
        )

    def _donation_from_dict(self, data: Dict) -> Donation:
        """Convert dictionary to Donation"""
        return Donation(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            from_agent_id=data['from_agent_id'],
            amount=parse_money(data['amount']),
            to_agent_id=data.get('to_agent_id'),
            to_name=data.get('to_name'),
            message=data.get('message')
        )
