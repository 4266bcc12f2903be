"""
Integration tests for the AgentBank facade

Every operation returns an OperationResult; failures carry stable codes and
leave no partial state behind.
"""

import pytest
import tempfile
import threading
from pathlib import Path

from agent_bank.bank import AgentBank, to_plain
from agent_bank.config import AgentBankConfig
from agent_bank.money import Money
from agent_bank.storage import InMemoryStorage, SQLiteStorage
from agent_bank.errors import ConcurrentModification, ErrorCategory, StorageError


def register(bank, name):
    result = bank.register_agent(name)
    assert result.success, result.message
    return result["agent"]["id"], result["account"]["id"]


class TestAgentBankFacade:

    def setup_method(self):
        self.bank = AgentBank(storage=InMemoryStorage(), config=AgentBankConfig(database_url="memory://"))
        self.alice_id, self.alice_checking = register(self.bank, "alice")
        self.bob_id, self.bob_checking = register(self.bank, "bob")

    def test_registration_result(self):
        result = self.bank.register_agent("carol")
        assert result.code == "OK"
        assert result["welcome_bonus"] == 10000.0
        assert result["account"]["balance"] == 10000.0
        assert "credited $10,000.00" in result.message

    def test_failure_codes(self):
        cases = [
            (self.bank.register_agent("alice"), "NAME_TAKEN"),
            (self.bank.open_account(self.alice_id, "stocks"), "INVALID_TYPE"),
            (self.bank.open_account(self.alice_id, "cd", initial_deposit=1000, cd_term_months=24), "INVALID_CD_TERM"),
            (self.bank.deposit(self.alice_id, self.bob_checking, 10), "ACCOUNT_NOT_FOUND"),
            (self.bank.transfer_to_agent(self.alice_id, "bob", "lots"), "INVALID_AMOUNT"),
            (self.bank.transfer_to_agent(self.alice_id, "ghost", 10), "AGENT_NOT_FOUND"),
            (self.bank.donate(self.alice_id, 10), "MISSING_RECIPIENT"),
            (self.bank.approve_request("missing", self.alice_id), "REQUEST_NOT_FOUND"),
            (self.bank.update_goal(self.alice_id, "missing", current_amount=1), "GOAL_NOT_FOUND"),
            (self.bank.get_transactions(self.alice_id, transaction_type="refund"), "INVALID_TYPE"),
        ]
        for result, code in cases:
            assert not result.success
            assert result.code == code
            assert result.to_dict() == {"success": False, "error": result.message, "code": code}

    def test_error_categories(self):
        assert self.bank.open_account(self.alice_id, "stocks").category == ErrorCategory.VALIDATION
        assert self.bank.get_agent("missing").category == ErrorCategory.NOT_FOUND
        result = self.bank.transfer_to_agent(self.alice_id, "alice", 10)
        assert result.category == ErrorCategory.STATE_CONFLICT

    def test_unexpected_error_is_reported_without_detail(self, monkeypatch):
        def explode(*args, **kwargs):
            raise KeyError("secret internals")
        monkeypatch.setattr(self.bank.accounts, "get_account_summary", explode)

        result = self.bank.get_summary(self.alice_id)

        assert not result.success
        assert result.code == "INTERNAL_ERROR"
        assert "secret" not in result.message

    def test_storage_failure_hides_driver_detail(self, monkeypatch):
        before = self.bank.storage.get_all_data()
        original_save = self.bank.storage.save

        def failing_save(table, record_id, data):
            if table == "accounts":
                raise StorageError("SQLite error: internal detail /var/secret/db host=10.0.0.5")
            original_save(table, record_id, data)
        monkeypatch.setattr(self.bank.storage, "save", failing_save)

        result = self.bank.transfer_to_agent(self.alice_id, "bob", 10)

        assert not result.success
        assert result.code == "STORAGE_ERROR"
        assert result.category == ErrorCategory.INFRASTRUCTURE
        assert "secret" not in result.message
        assert "SQLite" not in result.message
        monkeypatch.undo()
        assert self.bank.storage.get_all_data() == before

    def test_integrity_failure_hides_balances(self):
        record = self.bank.storage.load("accounts", self.alice_checking)
        record["balance"] = "123.45"
        self.bank.storage.save("accounts", self.alice_checking, record)

        result = self.bank.verify_account(self.alice_checking)

        assert result.code == "LEDGER_INTEGRITY"
        assert "123.45" not in result.message

    def test_money_is_conserved_across_operations(self):
        savings = self.bank.open_account(self.alice_id, "savings", initial_deposit=1000)["account"]["id"]
        assert self.bank.deposit(self.alice_id, savings, 500).success
        assert self.bank.withdraw(self.alice_id, savings, 200).success
        assert self.bank.transfer_to_agent(self.alice_id, "bob", 300, memo="rent").success
        request = self.bank.request_payment(self.bob_id, "alice", 50, reason="coffee")
        assert self.bank.approve_request(request["request"]["id"], self.alice_id).success
        assert self.bank.donate(self.bob_id, 25, to_agent="alice").success

        alice = self.bank.get_summary(self.alice_id)["net_worth"]
        bob = self.bank.get_summary(self.bob_id)["net_worth"]
        assert alice + bob == 20000.0
        assert alice == 9675.0

        for data in self.bank.storage.load_all("accounts"):
            assert self.bank.verify_account(data["id"]).success

    def test_failed_operation_leaves_no_trace(self):
        before = self.bank.storage.get_all_data()
        result = self.bank.transfer_to_agent(self.alice_id, "bob", "10000.01")
        assert result.code == "AMOUNT_TOO_LARGE"
        result = self.bank.open_account(self.alice_id, "money_market", initial_deposit=20000)
        assert result.code == "INSUFFICIENT_FUNDS"
        assert self.bank.storage.get_all_data() == before

    def test_version_conflict_surfaces_as_code(self):
        accounts = self.bank.accounts
        stale = accounts.get_account(self.alice_checking)
        assert self.bank.transfer_to_agent(self.alice_id, "bob", 1).success

        with pytest.raises(ConcurrentModification) as exc_info:
            with self.bank.storage.atomic():
                accounts.save_account(stale)
        assert exc_info.value.code == "CONCURRENT_MODIFICATION"

    def test_account_views(self):
        cd = self.bank.open_account(self.alice_id, "cd", initial_deposit=1000, cd_term_months=6)
        assert "Rate: 5.5% APY" in cd.message

        listed = self.bank.get_accounts(self.alice_id)
        assert listed["total_balance"] == 10000.0
        assert len(listed["accounts"]) == 2

        detail = self.bank.get_account(self.alice_id, cd["account"]["id"])
        assert detail["account"]["cd_principal"] == 1000.0
        assert detail["recent_transactions"][0]["type"] == "deposit"

        cds = self.bank.list_cds(self.alice_id)
        assert cds["summary"]["total_balance"] == 1000.0

        projection = self.bank.project_interest(self.alice_id)
        assert projection["projected_interest"]["twelve_months"] > 0

    def test_early_withdraw_messages(self):
        cd_id = self.bank.open_account(self.alice_id, "cd", initial_deposit=600, cd_term_months=3)["account"]["id"]

        preview = self.bank.early_withdraw(self.alice_id, cd_id)
        assert preview["preview"] is True
        assert "Confirm to proceed" in preview.message

        done = self.bank.early_withdraw(self.alice_id, cd_id, confirm=True)
        assert done["preview"] is False
        assert done["checking_balance"] == 10000.0

    def test_requests_and_donations_views(self):
        request = self.bank.request_payment(self.bob_id, "alice", 20)
        incoming = self.bank.list_requests(self.alice_id, "incoming")
        assert incoming["count"] == 1
        assert incoming["requests"][0]["from_agent"] == "bob"

        rejected = self.bank.reject_request(request["request"]["id"], self.alice_id)
        assert rejected["was_expired"] is False
        assert rejected.message == "Rejected payment request from bob"

        self.bank.donate(self.alice_id, 15, to_name="Food Bank")
        donations = self.bank.get_donations(self.alice_id)
        assert donations["made"][0]["to_name"] == "Food Bank"
        leaderboard = self.bank.get_donation_leaderboard()
        assert leaderboard["leaderboard"][0]["name"] == "alice"
        assert leaderboard["leaderboard"][0]["total_donated"] == 15.0

        profile = self.bank.get_agent_profile(self.bob_id, "ALICE")
        assert profile["generosity"]["donation_count"] == 1
        assert profile["is_me"] is False

    def test_goal_flow(self):
        goal = self.bank.create_goal(self.alice_id, "Server", 300)
        assert goal.success
        done = self.bank.update_goal(self.alice_id, goal["goal"]["id"], current_amount=300)
        assert done["goal"]["status"] == "completed"
        assert done.message.startswith("Congratulations")
        assert self.bank.list_goals(self.alice_id)["summary"]["completed"] == 1

    def test_batch_entry_points(self):
        interest = self.bank.credit_daily_interest()
        assert interest.success
        assert interest["accounts_credited"] == 2
        assert interest["total_interest"] == 0.26

        assert self.bank.reset_monthly_withdrawals()["accounts_reset"] == 0
        assert self.bank.process_matured_cds()["total_matured"] == 0

    def test_batch_failure_reports_zero_processed(self, monkeypatch):
        def explode(as_of=None):
            raise RuntimeError("disk full")
        monkeypatch.setattr(self.bank.interest, "credit_daily_interest", explode)

        result = self.bank.credit_daily_interest()

        assert not result.success
        assert result["accounts_processed"] == 0
        assert result["total_interest"] == 0.0

    def test_failed_batch_results_do_not_share_payloads(self, monkeypatch):
        def explode(as_of=None):
            raise RuntimeError("disk full")
        monkeypatch.setattr(self.bank.interest, "process_matured_cds", explode)

        first = self.bank.process_matured_cds()
        first["renewed"].append("leaked")
        second = self.bank.process_matured_cds()

        assert second["renewed"] == []
        assert second["skipped"] == []


def run_concurrent_withdrawals(banks, agent_id, account_id, attempts=12):
    barrier = threading.Barrier(attempts)
    codes = []

    def worker(bank):
        barrier.wait()
        codes.append(bank.withdraw(agent_id, account_id, 1).code)

    threads = [
        threading.Thread(target=worker, args=(banks[i % len(banks)],))
        for i in range(attempts)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    return codes


class TestConcurrentWithdrawals:
    """Simultaneous withdrawals never exceed the monthly limit"""

    def assert_limit_held(self, bank, codes, agent_id, savings_id):
        assert codes.count("OK") == 6
        assert codes.count("WITHDRAWAL_LIMIT_REACHED") == 6
        account = bank.get_account(agent_id, savings_id)["account"]
        assert account["balance"] == 494.0
        assert bank.verify_account(savings_id).success

    def test_in_memory(self):
        bank = AgentBank(storage=InMemoryStorage(), config=AgentBankConfig(database_url="memory://"))
        agent_id, _ = register(bank, "racer")
        savings_id = bank.open_account(agent_id, "savings", initial_deposit=500)["account"]["id"]

        codes = run_concurrent_withdrawals([bank], agent_id, savings_id)

        self.assert_limit_held(bank, codes, agent_id, savings_id)

    def test_two_sqlite_handles_on_one_file(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = Path(temp_dir) / "bank.db"
            config = AgentBankConfig(database_url=f"sqlite:///{db_path}")
            first = AgentBank(storage=SQLiteStorage(db_path), config=config)
            agent_id, _ = register(first, "racer")
            savings_id = first.open_account(agent_id, "savings", initial_deposit=500)["account"]["id"]
            second = AgentBank(storage=SQLiteStorage(db_path), config=config)

            codes = run_concurrent_withdrawals([first, second], agent_id, savings_id)

            self.assert_limit_held(second, codes, agent_id, savings_id)
            first.close()
            second.close()


class TestAgentBankOnSQLite:

    def test_state_survives_restart(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = Path(temp_dir) / "bank.db"
            config = AgentBankConfig(database_url=f"sqlite:///{db_path}")

            bank = AgentBank(config=config)
            agent_id, checking_id = register(bank, "durable")
            assert bank.open_account(agent_id, "savings", initial_deposit=250).success
            assert bank.transfer_to_agent(agent_id, "nobody", 10).code == "AGENT_NOT_FOUND"
            bank.close()

            reopened = AgentBank(storage=SQLiteStorage(db_path), config=config)
            summary = reopened.get_summary(agent_id)
            assert summary["net_worth"] == 10000.0
            assert summary["accounts"]["savings"]["balance"] == 250.0
            assert reopened.verify_account(checking_id)["balance"] == 9750.0
            reopened.close()


def test_to_plain_converts_ledger_values():
    assert to_plain({"a": [Money.of("1.50")]}) == {"a": [1.5]}


def test_batch_cli_prints_json(capsys):
    from agent_bank.__main__ import main

    exit_code = main(["daily-interest", "--database-url", "memory://", "--as-of", "2030-01-15T00:00:00"])

    assert exit_code == 0
    output = capsys.readouterr().out
    assert '"accounts_processed": 0' in output
    assert '"success": true' in output
