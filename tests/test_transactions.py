"""
Tests for the transaction log: ordering, pagination and balance replay
"""

import pytest

from agent_bank.money import Money
from agent_bank.storage import InMemoryStorage
from agent_bank.transactions import TransactionLog, TransactionType, MAX_PAGE_SIZE
from agent_bank.accounts import AccountManager
from agent_bank.agents import AgentManager
from agent_bank.errors import AccountNotFound, LedgerIntegrityError


class TestTransactionLog:

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.log = TransactionLog(self.storage)
        self.account_manager = AccountManager(self.storage, self.log)
        self.agent_manager = AgentManager(self.storage, self.account_manager)

        registration = self.agent_manager.register_agent("ledger_bot")
        self.agent_id = registration.agent.id
        self.checking_id = registration.checking.id

    def test_append_validates_amounts(self):
        with pytest.raises(ValueError):
            self.log.append(self.checking_id, TransactionType.DEPOSIT, Money.zero(), Money.of("1"))
        with pytest.raises(LedgerIntegrityError):
            self.log.append(self.checking_id, TransactionType.WITHDRAWAL, Money.of("1"), Money.of("-1"))

    def test_sequence_breaks_timestamp_ties(self):
        savings = self.account_manager.open_account(self.agent_id, "savings", initial_deposit=100)
        history = self.log.get_account_transactions(savings.id)
        sequences = [t.sequence for t in self.log.get_account_transactions(self.checking_id)]

        assert sequences == sorted(sequences, reverse=True)
        assert len(set(t.sequence for t in history)) == len(history)

    def test_agent_history_is_newest_first_and_paginated(self):
        savings = self.account_manager.open_account(self.agent_id, "savings", initial_deposit=100)
        for amount in range(1, 6):
            self.account_manager.deposit(self.agent_id, savings.id, amount)

        page = self.log.get_agent_transactions(self.agent_id, limit=3)
        assert page.total == 13
        assert len(page.transactions) == 3
        assert page.has_more
        assert page.transactions[0].amount == Money.of("5")

        last = self.log.get_agent_transactions(self.agent_id, limit=3, offset=12)
        assert len(last.transactions) == 1
        assert not last.has_more
        assert last.transactions[0].transaction_type == TransactionType.WELCOME_BONUS

    def test_filters_and_clamping(self):
        savings = self.account_manager.open_account(self.agent_id, "savings", initial_deposit=100)

        only_savings = self.log.get_agent_transactions(self.agent_id, account_id=savings.id)
        assert {t.account_id for t in only_savings.transactions} == {savings.id}

        bonus = self.log.get_agent_transactions(self.agent_id, transaction_type="welcome_bonus")
        assert bonus.total == 1

        clamped = self.log.get_agent_transactions(self.agent_id, limit=1000, offset=-5)
        assert clamped.limit == MAX_PAGE_SIZE
        assert clamped.offset == 0
        assert self.log.get_agent_transactions(self.agent_id, limit=0).limit == 1

    def test_foreign_account_filter_is_not_found(self):
        other = self.agent_manager.register_agent("other_bot")
        with pytest.raises(AccountNotFound):
            self.log.get_agent_transactions(self.agent_id, account_id=other.checking.id)

    def test_page_response_shape(self):
        response = self.log.get_agent_transactions(self.agent_id).to_response()
        assert response["pagination"] == {"total": 1, "limit": 50, "offset": 0, "has_more": False}
        assert response["transactions"][0]["type"] == "welcome_bonus"
        assert response["transactions"][0]["amount"] == 10000.0

    def test_replay_detects_tampering(self):
        record = self.storage.find("transactions", {"account_id": self.checking_id})[0]
        record["balance_after"] = "9999.00"
        self.storage.save("transactions", record["id"], record)

        with pytest.raises(LedgerIntegrityError):
            self.log.replay_balance(self.checking_id)
