"""Tests for the Supabase-backed credit ledger."""

import pytest

from studio.pipeline.store import CreditLedger, MAX_CAS_ATTEMPTS

from conftest import USER_ID


class TestCreditLedger:
    """Charge / refund semantics of CreditLedger."""

    @pytest.fixture
    def ledger(self, fake_db):
        return CreditLedger(client=fake_db)

    def test_charge_decrements_balance(self, ledger, fake_db):
        fake_db.set_credits(USER_ID, 12)

        assert ledger.charge(USER_ID, 5, reason="image_generation") is True
        assert fake_db.credits(USER_ID) == 7

    def test_charge_exact_balance_reaches_zero(self, ledger, fake_db):
        fake_db.set_credits(USER_ID, 5)

        assert ledger.charge(USER_ID, 5, reason="image_generation") is True
        assert fake_db.credits(USER_ID) == 0

    def test_charge_declined_without_mutation(self, ledger, fake_db):
        fake_db.set_credits(USER_ID, 4)

        assert ledger.charge(USER_ID, 5, reason="image_generation") is False
        assert fake_db.credits(USER_ID) == 4
        assert fake_db.tables.get("credit_transactions", []) == []

    def test_charge_declined_for_missing_account(self, ledger, fake_db):
        assert ledger.charge("nobody", 5, reason="image_generation") is False

    def test_refund_increments_balance(self, ledger, fake_db):
        fake_db.set_credits(USER_ID, 0)

        ledger.refund(USER_ID, 5, reason="create_project_refund", project_id="p1")

        assert fake_db.credits(USER_ID) == 5

    def test_refund_without_account_raises(self, ledger):
        with pytest.raises(RuntimeError):
            ledger.refund("nobody", 5, reason="create_project_refund")

    def test_charge_retries_when_balance_changes_concurrently(self, ledger, fake_db):
        """A concurrent charge between read and write must not be overwritten."""
        fake_db.set_credits(USER_ID, 10)
        fake_db.before[("users", "update")] = [lambda db: db.set_credits(USER_ID, 7)]

        assert ledger.charge(USER_ID, 5, reason="image_generation") is True
        assert fake_db.credits(USER_ID) == 2

    def test_charge_declines_when_concurrent_charge_drains_balance(self, ledger, fake_db):
        fake_db.set_credits(USER_ID, 10)
        fake_db.before[("users", "update")] = [lambda db: db.set_credits(USER_ID, 3)]

        assert ledger.charge(USER_ID, 5, reason="image_generation") is False
        assert fake_db.credits(USER_ID) == 3

    def test_charge_gives_up_after_repeated_contention(self, ledger, fake_db):
        fake_db.set_credits(USER_ID, 100)
        balances = iter(range(99, 99 - MAX_CAS_ATTEMPTS, -1))
        fake_db.before[("users", "update")] = [
            lambda db: db.set_credits(USER_ID, next(balances)) for _ in range(MAX_CAS_ATTEMPTS)
        ]

        with pytest.raises(RuntimeError):
            ledger.charge(USER_ID, 5, reason="image_generation")

    def test_transactions_are_recorded(self, ledger, fake_db):
        fake_db.set_credits(USER_ID, 10)

        ledger.charge(USER_ID, 10, reason="video_generation", project_id="p1")
        ledger.refund(USER_ID, 10, reason="create_video_refund", project_id="p1")

        transactions = fake_db.tables["credit_transactions"]
        assert [t["amount"] for t in transactions] == [-10, 10]
        assert [t["balance_after"] for t in transactions] == [0, 10]
        assert all(t["project_id"] == "p1" for t in transactions)

    def test_transaction_log_failure_does_not_undo_charge(self, ledger, fake_db):
        fake_db.set_credits(USER_ID, 10)
        fake_db.fail_on[("credit_transactions", "insert")] = RuntimeError("audit table down")

        assert ledger.charge(USER_ID, 5, reason="image_generation") is True
        assert fake_db.credits(USER_ID) == 5

    def test_ensure_account_opens_once(self, ledger, fake_db):
        assert ledger.ensure_account(USER_ID, 20) == 20
        ledger.charge(USER_ID, 5, reason="image_generation")

        assert ledger.ensure_account(USER_ID, 20) == 15
        assert len(fake_db.tables["users"]) == 1

    def test_ensure_account_tolerates_concurrent_signup(self, ledger, fake_db):
        def concurrent_signup(db):
            db.set_credits(USER_ID, 20)
            raise RuntimeError('duplicate key value violates unique constraint "users_pkey"')

        fake_db.before[("users", "insert")] = [concurrent_signup]

        assert ledger.ensure_account(USER_ID, 20) == 20
        assert len(fake_db.tables["users"]) == 1

    def test_ensure_account_insert_failure_without_account_raises(self, ledger, fake_db):
        fake_db.fail_on[("users", "insert")] = RuntimeError("db gone")

        with pytest.raises(RuntimeError):
            ledger.ensure_account(USER_ID, 20)
