"""
Agent Registry Module

Registers agents, resolves them by case-insensitive name and tracks their
claim and activity state. Registration opens the agent's primary checking
account and credits the welcome bonus in the same unit of work.
"""

from datetime import datetime
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Type
import re
import uuid

from .storage import StorageInterface, StorageRecord, parse_datetime, utc_now
from .accounts import AccountManager, Account
from .products import AccountType, WELCOME_BONUS
from .transactions import TransactionType
from .errors import (
    AgentInactive, AgentNotFound, AlreadyClaimed, InvalidName, MissingName,
    NameTaken, StateConflictError
)
from .logging_config import get_logger, log_action


NAME_PATTERN = re.compile(r'^[A-Za-z0-9_-]{3,50}$')
PRIMARY_CHECKING_NICKNAME = "Primary Checking"
MAX_DESCRIPTION_LENGTH = 500


@dataclass
class Agent(StorageRecord):
    """
    Autonomous agent holding accounts at the bank
    """
    name: str
    description: Optional[str] = None
    credential_hash: Optional[str] = None   # Issued and hashed by the caller
    is_active: bool = True
    is_claimed: bool = False
    owner_handle: Optional[str] = None
    owner_name: Optional[str] = None
    claimed_at: Optional[datetime] = None
    last_active: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_response(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "is_active": self.is_active,
            "is_claimed": self.is_claimed,
            "created_at": self.created_at.isoformat(),
            "last_active": self.last_active.isoformat() if self.last_active else None,
        }


@dataclass
class Registration:
    """Newly registered agent with its funded checking account"""
    agent: Agent
    checking: Account


class AgentManager:
    """
    Manages agent registration and lookup
    """

    def __init__(self, storage: StorageInterface, account_manager: AccountManager):
        self.storage = storage
        self.account_manager = account_manager
        self.agents_table = "agents"
        self.logger = get_logger("agent_bank.agents")

    def register_agent(
        self,
        name: str,
        description: Optional[str] = None,
        credential_hash: Optional[str] = None
    ) -> Registration:
        """
        Register a new agent

        Args:
            name: Unique name, 3-50 characters of letters, digits, _ or -
            description: Optional free text
            credential_hash: Hash of the credential issued to the agent

        Returns:
            Registration with the agent and its primary checking account
        """
        if not name or not isinstance(name, str):
            raise MissingName()
        if not NAME_PATTERN.match(name):
            raise InvalidName("Name must be 3-50 characters, alphanumeric with _ or -")
        if description is not None:
            description = description[:MAX_DESCRIPTION_LENGTH]

        now = utc_now()
        with self.storage.atomic():
            if self.find_by_name(name) is not None:
                raise NameTaken()

            agent = Agent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                name=name,
                description=description,
                credential_hash=credential_hash,
                last_active=now
            )
            self._save_agent(agent)

            checking = self.account_manager.open_account(
                agent.id, AccountType.CHECKING, nickname=PRIMARY_CHECKING_NICKNAME
            )
            self.account_manager.credit(
                checking, WELCOME_BONUS, TransactionType.WELCOME_BONUS,
                memo="Welcome to AgentBank!"
            )

        log_action(
            self.logger, "info", f"Registered agent {name}",
            agent_id=agent.id, action="register", resource=agent.id,
            extra={"welcome_bonus": str(WELCOME_BONUS)}
        )
        return Registration(agent=agent, checking=checking)

    def get_agent(self, agent_id: str) -> Optional[Agent]:
        """Get agent by ID"""
        agent_dict = self.storage.load(self.agents_table, agent_id)
        if agent_dict:
            return self._agent_from_dict(agent_dict)
        return None

    def require_agent(self, agent_id: str) -> Agent:
        agent = self.get_agent(agent_id)
        if agent is None:
            raise AgentNotFound()
        return agent

    def find_by_name(self, name: str) -> Optional[Agent]:
        """Find an agent by name, ignoring case"""
        if not name:
            return None
        wanted = name.lower()
        for data in self.storage.load_all(self.agents_table):
            if data['name'].lower() == wanted:
                return self._agent_from_dict(data)
        return None

    def list_agents(self, active_only: bool = True) -> List[Agent]:
        agents = [self._agent_from_dict(data) for data in self.storage.load_all(self.agents_table)]
        if active_only:
            agents = [a for a in agents if a.is_active]
        return agents

    def resolve_recipient(
        self,
        caller_id: str,
        name: str,
        self_error: Type[StateConflictError]
    ) -> Agent:
        """
        Resolve a counterparty by name for transfers, donations and requests

        Raises:
            AgentNotFound: No agent with that name
            AgentInactive: The agent is deactivated
            self_error: The name resolves to the caller
        """
        recipient = self.find_by_name(name)
        if recipient is None:
            raise AgentNotFound(f"Agent '{name}' not found")
        if not recipient.is_active:
            raise AgentInactive()
        if recipient.id == caller_id:
            raise self_error()
        return recipient

    def update_profile(
        self,
        agent_id: str,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Agent:
        with self.storage.atomic():
            agent = self.require_agent(agent_id)
            if description is not None:
                agent.description = description[:MAX_DESCRIPTION_LENGTH]
            if metadata:
                agent.metadata.update(metadata)
            self._save_agent(agent)
        log_action(
            self.logger, "info", "Updated agent profile",
            agent_id=agent_id, action="update_profile", resource=agent_id
        )
        return agent

    def claim_agent(self, agent_id: str, owner_handle: str, owner_name: Optional[str] = None) -> Agent:
        """Record the human owner who verified this agent"""
        if not owner_handle:
            raise MissingName("Owner handle is required")
        with self.storage.atomic():
            agent = self.require_agent(agent_id)
            if agent.is_claimed:
                raise AlreadyClaimed()
            agent.is_claimed = True
            agent.owner_handle = owner_handle
            agent.owner_name = owner_name
            agent.claimed_at = utc_now()
            self._save_agent(agent)
        log_action(
            self.logger, "info", f"Agent claimed by {owner_handle}",
            agent_id=agent_id, action="claim", resource=agent_id
        )
        return agent

    def deactivate_agent(self, agent_id: str) -> Agent:
        """Soft-deactivate an agent, it can no longer receive funds"""
        with self.storage.atomic():
            agent = self.require_agent(agent_id)
            agent.is_active = False
            self._save_agent(agent)
        log_action(
            self.logger, "warning", "Agent deactivated",
            agent_id=agent_id, action="deactivate", resource=agent_id
        )
        return agent

    def touch(self, agent_id: str) -> None:
        """Update last_active"""
        with self.storage.atomic():
            agent = self.require_agent(agent_id)
            agent.last_active = utc_now()
            self._save_agent(agent)

    def _save_agent(self, agent: Agent) -> None:
        """Save agent to storage"""
        agent.updated_at = utc_now()
        self.storage.save(self.agents_table, agent.id, agent.to_dict())

    def _agent_from_dict(self, data: Dict) -> Agent:
        """Convert dictionary to Agent"""
        return Agent(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            name=data['name'],
            description=data.get('description'),
            credential_hash=data.get('credential_hash'),
            is_active=bool(data.get('is_active', True)),
            is_claimed=bool(data.get('is_claimed', False)),
            owner_handle=data.get('owner_handle'),
            owner_name=data.get('owner_name'),
            claimed_at=parse_datetime(data.get('claimed_at')),
            last_active=parse_datetime(data.get('last_active')),
            metadata=data.get('metadata') or {}
        )
