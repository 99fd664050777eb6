import dataclasses
from decimal import Decimal
from typing import Dict, List, Optional

import pytest
from loguru import logger

from errors import StoreError
from models import CommissionRow, PartnerRecord, UserRecord


class InMemoryReferralStore:
    """
    ReferralStore double backed by dicts.

    users are wired by referral code like the real tables: a user's
    referral_id is the own code of whoever referred them.
    `fail_on` holds operation names that raise StoreError, `calls` records
    every lookup so tests can count round-trips.
    """

    def __init__(self):
        self.users: Dict[str, UserRecord] = {}
        self.codes: Dict[str, str] = {}
        self.partners: Dict[str, PartnerRecord] = {}
        self.auto_ranked: Dict[str, bool] = {}
        self.rewards: Dict[str, Decimal] = {}
        self.snapshots: Dict[str, List[CommissionRow]] = {}
        self.fail_on = set()
        self.calls: List[str] = []

    # -----
    # test helpers
    # -----

    def add_user(
        self,
        user_id: str,
        rank: Optional[str] = "Đồng",
        referred_by: Optional[str] = None,
        email: Optional[str] = None,
        status: Optional[str] = None,
        referral_id: Optional[str] = None,
        reward=None,
        with_code: bool = True,
    ) -> UserRecord:
        if referred_by is not None:
            referral_id = self.code_of(referred_by)
        user = UserRecord(
            user_id=user_id,
            email=email or f"{user_id.lower()}@example.com",
            partner_rank=rank,
            referral_id=referral_id,
            status=status,
        )
        self.users[user_id] = user
        if with_code:
            self.codes[f"{user_id}-1000"] = user_id
        if reward is not None:
            self.rewards[user_id] = Decimal(reward)
        return user

    def code_of(self, user_id: str) -> str:
        return next(code for code, owner in self.codes.items() if owner == user_id)

    def set_referral_id(self, user_id: str, referral_id: Optional[str]) -> None:
        self.users[user_id] = dataclasses.replace(self.users[user_id], referral_id=referral_id)

    def _call(self, operation: str) -> None:
        self.calls.append(operation)
        if operation in self.fail_on:
            raise StoreError(operation, "simulated failure")

    # -----
    # ReferralStore
    # -----

    def get_user(self, user_id):
        self._call("get_user")
        return self.users.get(user_id)

    def get_user_by_email(self, email):
        self._call("get_user_by_email")
        return next((u for u in self.users.values() if u.email == email), None)

    def get_referral_code_owner(self, referral_code):
        self._call("get_referral_code_owner")
        return self.codes.get(referral_code)

    def referral_code_exists(self, referral_code):
        self._call("referral_code_exists")
        return referral_code in self.codes

    def prefetch_upline(self, user_id=None, referral_code=None, max_hops=50):
        self._call("prefetch_upline")

    def get_downline_ids(self, user_id, max_levels=50):
        self._call("get_downline_ids")
        seen = {user_id}
        result = []
        level = [user_id]
        for _ in range(max_levels):
            if not level:
                break
            level_codes = {c for c, owner in self.codes.items() if owner in level}
            children = sorted(
                u.user_id
                for u in self.users.values()
                if u.referral_id in level_codes and u.user_id not in seen
            )
            seen.update(children)
            result.extend(children)
            level = children
        return result

    def set_partner_rank(self, user_id, rank, is_auto_ranked=None):
        self._call("set_partner_rank")
        if user_id not in self.users:
            return False
        self.users[user_id] = dataclasses.replace(self.users[user_id], partner_rank=rank)
        if is_auto_ranked is not None:
            self.auto_ranked[user_id] = is_auto_ranked
        return True

    def get_partner(self, user_id):
        self._call("get_partner")
        return self.partners.get(user_id)

    def partner_exists(self, user_id):
        return self.get_partner(user_id) is not None

    def create_partner(self, user_id):
        self._call("create_partner")
        if user_id in self.partners:
            raise StoreError("create_partner", "duplicate key")
        self.partners[user_id] = PartnerRecord(user_id=user_id)

    def set_partner_type(self, user_id, partner_type, changed_at):
        self._call("set_partner_type")
        if user_id not in self.partners:
            return False
        self.partners[user_id] = PartnerRecord(
            user_id=user_id,
            partner_type=partner_type,
            partner_type_change_date=changed_at,
        )
        return True

    def insert_own_referral_id(self, user_id, referral_code):
        self._call("insert_own_referral_id")
        if referral_code in self.codes:
            raise StoreError("insert_own_referral_id", "duplicate key")
        self.codes[referral_code] = user_id

    def get_source_total_reward(self, user_id):
        self._call("get_source_total_reward")
        return self.rewards.get(user_id)

    def replace_snapshots(self, recipient_id, rows):
        self._call("replace_snapshots")
        self.snapshots[recipient_id] = [dataclasses.replace(r) for r in rows]

    def list_snapshots(self, recipient_id):
        self._call("list_snapshots")
        rows = [dataclasses.replace(r) for r in self.snapshots.get(recipient_id, [])]
        rows.sort(key=lambda r: (r.depth, r.source_partner_id))
        rows.sort(key=lambda r: r.snapshot_at, reverse=True)
        return rows


@pytest.fixture
def store():
    return InMemoryReferralStore()


@pytest.fixture
def chain_store(store):
    """
    ADMIN -> R1 -> R2 -> T, with a second branch R1 -> S.
    every partner below ADMIN has a reward.
    """
    store.add_user("ADMIN1", rank="ADMIN", status="ADMIN")
    store.add_user("R1", rank="Kim Cương", referred_by="ADMIN1", reward="1000")
    store.add_user("R2", rank="Bạch Kim", referred_by="R1", reward="500")
    store.add_user("T", rank="Vàng", referred_by="R2", reward="200")
    store.add_user("S", rank="Vàng", referred_by="R1", reward="300")
    return store


@pytest.fixture
def log_messages():
    """formatted loguru messages emitted while the test runs."""
    messages: List[str] = []
    handler_id = logger.add(lambda m: messages.append(m.record["message"]), level="DEBUG")
    yield messages
    logger.remove(handler_id)
