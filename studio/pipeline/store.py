"""
Supabase-backed persistence for projects and the credit ledger.

Tables:
  projects             one row per generation project
  users                credit balance per auth user (id = Supabase auth uid)
  credit_transactions  append-only audit trail of charges and refunds

Balance changes are compare-and-swap updates (``... WHERE credits = old``)
so concurrent charges for one user can never drive a balance negative.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from ..supabase_client import get_supabase

logger = logging.getLogger(__name__)

PROJECTS_TABLE = "projects"
USERS_TABLE = "users"
TRANSACTIONS_TABLE = "credit_transactions"

MAX_CAS_ATTEMPTS = 5


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class _SupabaseTable:
    def __init__(self, client=None):
        self._client = client

    @property
    def client(self):
        return self._client if self._client is not None else get_supabase()


# ═════════════════════════════════════════════════════════════════════════════
# Project Record Store
# ═════════════════════════════════════════════════════════════════════════════

class ProjectStore(_SupabaseTable):

    def create(self, row: dict) -> dict:
        now = _now_iso()
        payload = {"created_at": now, "updated_at": now, **row}
        result = self.client.table(PROJECTS_TABLE).insert(payload).execute()
        return result.data[0] if result.data else payload

    def get_owned(self, project_id: str, user_id: str) -> Optional[dict]:
        result = (
            self.client.table(PROJECTS_TABLE)
            .select("*")
            .eq("id", project_id)
            .eq("user_id", user_id)
            .execute()
        )
        return result.data[0] if result.data else None

    def update(self, project_id: str, fields: dict) -> Optional[dict]:
        result = (
            self.client.table(PROJECTS_TABLE)
            .update({**fields, "updated_at": _now_iso()})
            .eq("id", project_id)
            .execute()
        )
        return result.data[0] if result.data else None

    def update_owned(self, project_id: str, user_id: str, fields: dict) -> Optional[dict]:
        result = (
            self.client.table(PROJECTS_TABLE)
            .update({**fields, "updated_at": _now_iso()})
            .eq("id", project_id)
            .eq("user_id", user_id)
            .execute()
        )
        return result.data[0] if result.data else None

    def claim_generation(self, project_id: str, user_id: str) -> bool:
        """
        Flip is_generating false → true on a project without a video.
        False if another request got there first.
        """
        result = (
            self.client.table(PROJECTS_TABLE)
            .update({"is_generating": True, "updated_at": _now_iso()})
            .eq("id", project_id)
            .eq("user_id", user_id)
            .eq("is_generating", False)
            .is_("generated_video", "null")
            .execute()
        )
        return bool(result.data)

    def delete_owned(self, project_id: str, user_id: str) -> bool:
        result = (
            self.client.table(PROJECTS_TABLE)
            .delete()
            .eq("id", project_id)
            .eq("user_id", user_id)
            .execute()
        )
        return bool(result.data)

    def list_published(self) -> list[dict]:
        result = (
            self.client.table(PROJECTS_TABLE)
            .select("*")
            .eq("is_published", True)
            .order("created_at", desc=True)
            .execute()
        )
        return result.data or []

    def list_for_user(self, user_id: str) -> list[dict]:
        result = (
            self.client.table(PROJECTS_TABLE)
            .select("*")
            .eq("user_id", user_id)
            .order("created_at", desc=True)
            .execute()
        )
        return result.data or []


# ═════════════════════════════════════════════════════════════════════════════
# Credit Ledger
# ═════════════════════════════════════════════════════════════════════════════

class CreditLedger(_SupabaseTable):

    def balance(self, user_id: str) -> Optional[int]:
        result = (
            self.client.table(USERS_TABLE)
            .select("credits")
            .eq("id", user_id)
            .execute()
        )
        if not result.data:
            return None
        return int(result.data[0].get("credits") or 0)

    def ensure_account(self, user_id: str, initial_credits: int) -> int:
        """Return the balance, opening the account with ``initial_credits`` if missing."""
        current = self.balance(user_id)
        if current is not None:
            return current
        try:
            self.client.table(USERS_TABLE).insert({
                "id": user_id,
                "credits": initial_credits,
                "created_at": _now_iso(),
            }).execute()
        except Exception as e:
            # A concurrent first request may have opened the account
            current = self.balance(user_id)
            if current is None:
                raise
            logger.info(f"Credit account for {user_id} already opened concurrently: {e}")
            return current
        self._record(user_id, initial_credits, initial_credits, "signup")
        logger.info(f"Opened credit account for {user_id} with {initial_credits} credits")
        return initial_credits

    def charge(self, user_id: str, amount: int, reason: str, project_id: Optional[str] = None) -> bool:
        """
        Atomically take ``amount`` credits. Returns False (nothing changed)
        when the account is missing or the balance is too low.
        """
        for _ in range(MAX_CAS_ATTEMPTS):
            current = self.balance(user_id)
            if current is None or current < amount:
                logger.info(f"Charge declined for {user_id}: balance={current}, amount={amount}")
                return False
            if self._swap(user_id, current, current - amount):
                self._record(user_id, -amount, current - amount, reason, project_id)
                logger.info(f"Charged {amount} credits from {user_id} ({reason}): {current} → {current - amount}")
                return True
            logger.warning(f"Credit balance for {user_id} changed concurrently, retrying charge")
        raise RuntimeError(f"Could not charge {user_id}: balance kept changing")

    def refund(self, user_id: str, amount: int, reason: str, project_id: Optional[str] = None) -> None:
        for _ in range(MAX_CAS_ATTEMPTS):
            current = self.balance(user_id)
            if current is None:
                raise RuntimeError(f"Cannot refund {amount} credits: no account for {user_id}")
            if self._swap(user_id, current, current + amount):
                self._record(user_id, amount, current + amount, reason, project_id)
                logger.info(f"Refunded {amount} credits to {user_id} ({reason}): {current} → {current + amount}")
                return
            logger.warning(f"Credit balance for {user_id} changed concurrently, retrying refund")
        raise RuntimeError(f"Could not refund {user_id}: balance kept changing")

    def _swap(self, user_id: str, expected: int, new_balance: int) -> bool:
        result = (
            self.client.table(USERS_TABLE)
            .update({"credits": new_balance})
            .eq("id", user_id)
            .eq("credits", expected)
            .execute()
        )
        return bool(result.data)

    def _record(
        self,
        user_id: str,
        amount: int,
        balance_after: int,
        reason: str,
        project_id: Optional[str] = None,
    ):
        try:
            self.client.table(TRANSACTIONS_TABLE).insert({
                "user_id": user_id,
                "amount": amount,
                "balance_after": balance_after,
                "reason": reason,
                "project_id": project_id,
                "created_at": _now_iso(),
            }).execute()
        except Exception as e:
            # Balance update already committed
            logger.error(f"Failed to record credit transaction for {user_id}: {e}")
