"""
Savings Goals Module

Goals are bookkeeping on top of accounts: the agent reports progress by
updating ``current_amount`` and a goal completes once it reaches its target.
Goals never move money.
"""

from datetime import datetime, date, timezone
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .money import Money
from .storage import StorageInterface, StorageRecord, parse_datetime, parse_money, utc_now
from .accounts import AccountManager, UNSET
from .errors import (
    AccountNotFound, CannotReactivate, DateInPast, ExceedsTarget, GoalNotFound,
    InvalidAmount, InvalidDate, InvalidName, InvalidStatus, MissingName, NameTooLong
)
from .logging_config import get_logger, log_action


MAX_GOAL_NAME_LENGTH = 100


class GoalStatus(Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass
class Goal(StorageRecord):
    """Savings target, optionally linked to one of the agent's accounts"""
    agent_id: str
    name: str
    target_amount: Money
    current_amount: Money = Money.zero()
    target_date: Optional[datetime] = None
    linked_account_id: Optional[str] = None
    status: GoalStatus = GoalStatus.ACTIVE
    completed_at: Optional[datetime] = None

    @property
    def progress_percent(self) -> Decimal:
        if not self.target_amount.is_positive():
            return Decimal('0')
        progress = self.current_amount.amount / self.target_amount.amount * 100
        return min(progress, Decimal('100')).quantize(Decimal('0.01'))

    def to_response(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "target_amount": self.target_amount.to_float(),
            "current_amount": self.current_amount.to_float(),
            "progress_percent": float(self.progress_percent),
            "target_date": self.target_date.isoformat() if self.target_date else None,
            "status": self.status.value,
            "linked_account_id": self.linked_account_id,
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


def parse_target_date(value) -> datetime:
    """Accept a datetime, a date or an ISO 8601 string"""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            raise InvalidDate("Invalid target date format")
    else:
        raise InvalidDate("Invalid target date format")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class GoalManager:
    """
    Manages savings goals
    """

    def __init__(self, storage: StorageInterface, account_manager: AccountManager):
        self.storage = storage
        self.account_manager = account_manager
        self.goals_table = "goals"
        self.logger = get_logger("agent_bank.goals")

    def create_goal(
        self,
        agent_id: str,
        name: str,
        target_amount,
        target_date=None,
        linked_account_id: Optional[str] = None
    ) -> Goal:
        if not name or not isinstance(name, str) or not name.strip():
            raise MissingName("Goal name is required")
        if len(name) > MAX_GOAL_NAME_LENGTH:
            raise NameTooLong("Goal name must be 100 characters or less")

        target = Money.parse(target_amount)
        if not target.is_positive():
            raise InvalidAmount("Target amount must be positive")

        if linked_account_id:
            account = self.account_manager.get_account(linked_account_id)
            if account is None or account.agent_id != agent_id or not account.is_active:
                raise AccountNotFound("Linked account not found or not active")

        now = utc_now()
        parsed_date = None
        if target_date:
            parsed_date = parse_target_date(target_date)
            if parsed_date <= now:
                raise DateInPast()

        goal = Goal(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            agent_id=agent_id,
            name=name.strip(),
            target_amount=target,
            target_date=parsed_date,
            linked_account_id=linked_account_id or None
        )
        self._save_goal(goal)

        log_action(
            self.logger, "info", f"Created goal {goal.name}",
            agent_id=agent_id, action="create_goal", resource=goal.id,
            extra={"target_amount": str(target)}
        )
        return goal

    def update_goal(
        self,
        agent_id: str,
        goal_id: str,
        name=UNSET,
        current_amount=UNSET,
        status=UNSET
    ) -> Goal:
        """
        Rename a goal, record progress or change its status

        All fields are validated before anything is written. Reaching the
        target completes an active goal; completed and cancelled goals
        cannot be reactivated.
        """
        with self.storage.atomic():
            goal = self.get_goal(agent_id, goal_id)

            if name is not UNSET:
                if not isinstance(name, str) or not name.strip():
                    raise InvalidName("Goal name cannot be empty")
                if len(name) > MAX_GOAL_NAME_LENGTH:
                    raise NameTooLong("Goal name must be 100 characters or less")

            amount = None
            if current_amount is not UNSET:
                amount = Money.parse(current_amount)
                if amount.is_negative():
                    raise InvalidAmount("Current amount cannot be negative")
                if amount > goal.target_amount:
                    raise ExceedsTarget()

            new_status = None
            if status is not UNSET:
                try:
                    new_status = GoalStatus(status.value if isinstance(status, GoalStatus) else status)
                except ValueError:
                    raise InvalidStatus("Invalid status. Must be: active, completed, or cancelled")
                if goal.status != GoalStatus.ACTIVE and new_status == GoalStatus.ACTIVE:
                    raise CannotReactivate()

            now = utc_now()
            if name is not UNSET:
                goal.name = name.strip()
            if amount is not None:
                goal.current_amount = amount
                if amount >= goal.target_amount and goal.status == GoalStatus.ACTIVE:
                    goal.status = GoalStatus.COMPLETED
                    goal.completed_at = now
            if new_status is not None and new_status != goal.status:
                goal.status = new_status
                if new_status == GoalStatus.COMPLETED:
                    goal.completed_at = now

            self._save_goal(goal)

        log_action(
            self.logger, "info", "Updated goal",
            agent_id=agent_id, action="update_goal", resource=goal.id,
            extra={"status": goal.status.value}
        )
        return goal

    def get_goal(self, agent_id: str, goal_id: str) -> Goal:
        data = self.storage.load(self.goals_table, goal_id)
        if data is None or data['agent_id'] != agent_id:
            raise GoalNotFound()
        return self._goal_from_dict(data)

    def list_goals(self, agent_id: str, status=None) -> Dict[str, Any]:
        """Goals newest first with a status summary"""
        goals = [
            self._goal_from_dict(data)
            for data in self.storage.find(self.goals_table, {'agent_id': agent_id})
        ]
        if status in [s.value for s in GoalStatus]:
            goals = [g for g in goals if g.status.value == status]
        elif isinstance(status, GoalStatus):
            goals = [g for g in goals if g.status == status]
        goals.sort(key=lambda g: g.created_at, reverse=True)

        return {
            "goals": goals,
            "summary": {
                "total": len(goals),
                "active": len([g for g in goals if g.status == GoalStatus.ACTIVE]),
                "completed": len([g for g in goals if g.status == GoalStatus.COMPLETED]),
            },
        }

    def _save_goal(self, goal: Goal) -> None:
        goal.updated_at = utc_now()
        self.storage.save(self.goals_table, goal.id, goal.to_dict())

    def _goal_from_dict(self, data: Dict) -> Goal:
        return Goal(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            agent_id=data['agent_id'],
            name=data['name'],
            target_amount=parse_money(data['target_amount']),
            current_amount=parse_money(data.get('current_amount', '0')),
            target_date=parse_datetime(data.get('target_date')),
            linked_account_id=data.get('linked_account_id'),
            status=GoalStatus(data['status']),
            completed_at=parse_datetime(data.get('completed_at'))
        )
