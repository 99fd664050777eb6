"""
store handle used by the walker, the rank assignment and the allocator.

the engines never open connections themselves: callers build a store and pass
it in. `PostgresReferralStore` wraps one psycopg connection (one transaction);
tests use an in-memory double with the same methods.
"""

from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Protocol

import psycopg
from loguru import logger
from psycopg import Connection

from db import repositories
from errors import StoreError
from models import CommissionRow, PartnerRecord, UserRecord


class ReferralStore(Protocol):
    def get_user(self, user_id: str) -> Optional[UserRecord]: ...

    def get_user_by_email(self, email: str) -> Optional[UserRecord]: ...

    def get_referral_code_owner(self, referral_code: str) -> Optional[str]: ...

    def referral_code_exists(self, referral_code: str) -> bool: ...

    def prefetch_upline(
        self,
        user_id: Optional[str] = None,
        referral_code: Optional[str] = None,
        max_hops: int = 50,
    ) -> None: ...

    def get_downline_ids(self, user_id: str, max_levels: int = 50) -> List[str]: ...

    def set_partner_rank(
        self, user_id: str, rank: str, is_auto_ranked: Optional[bool] = None
    ) -> bool: ...

    def get_partner(self, user_id: str) -> Optional[PartnerRecord]: ...

    def partner_exists(self, user_id: str) -> bool: ...

    def create_partner(self, user_id: str) -> None: ...

    def set_partner_type(self, user_id: str, partner_type: str, changed_at: datetime) -> bool: ...

    def insert_own_referral_id(self, user_id: str, referral_code: str) -> None: ...

    def get_source_total_reward(self, user_id: str) -> Optional[Decimal]: ...

    def replace_snapshots(self, recipient_id: str, rows: Iterable[CommissionRow]) -> None: ...

    def list_snapshots(self, recipient_id: str) -> List[CommissionRow]: ...


@contextmanager
def _store_errors(operation: str):
    try:
        yield
    except psycopg.Error as e:
        logger.error("store operation {} failed: {}", operation, e)
        raise StoreError(operation, str(e)) from e


class PostgresReferralStore:
    """
    ReferralStore over a single psycopg connection.

    prefetch_upline() loads a whole upline with one recursive query and keeps
    users and code owners in a per-handle cache; lookups that miss the cache
    go to the database as usual. any write clears the cache.
    """

    def __init__(self, conn: Connection):
        self.conn = conn
        self._users: Dict[str, UserRecord] = {}
        self._code_owners: Dict[str, str] = {}

    def _forget(self) -> None:
        self._users.clear()
        self._code_owners.clear()

    # -----
    # reads
    # -----

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        cached = self._users.get(user_id)
        if cached is not None:
            return cached
        with _store_errors("get_user"):
            return repositories.get_user(self.conn, user_id)

    def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        with _store_errors("get_user_by_email"):
            return repositories.get_user_by_email(self.conn, email)

    def get_referral_code_owner(self, referral_code: str) -> Optional[str]:
        cached = self._code_owners.get(referral_code)
        if cached is not None:
            return cached
        with _store_errors("get_referral_code_owner"):
            return repositories.get_referral_code_owner(self.conn, referral_code)

    def referral_code_exists(self, referral_code: str) -> bool:
        if referral_code in self._code_owners:
            return True
        with _store_errors("referral_code_exists"):
            return repositories.referral_code_exists(self.conn, referral_code)

    def prefetch_upline(
        self,
        user_id: Optional[str] = None,
        referral_code: Optional[str] = None,
        max_hops: int = 50,
    ) -> None:
        with _store_errors("prefetch_upline"):
            rows = repositories.fetch_upline(
                self.conn,
                user_id=user_id,
                referral_code=referral_code,
                max_hops=max_hops,
            )
        for row in rows:
            user = row["user"]
            self._users[user.user_id] = user
            if row["via_code"]:
                self._code_owners[row["via_code"]] = user.user_id
        logger.debug(
            "prefetched {} upline rows (user {}, code {})",
            len(rows),
            user_id,
            referral_code,
        )

    def get_downline_ids(self, user_id: str, max_levels: int = 50) -> List[str]:
        with _store_errors("get_downline_ids"):
            return repositories.get_downline_ids(self.conn, user_id, max_levels)

    def get_partner(self, user_id: str) -> Optional[PartnerRecord]:
        with _store_errors("get_partner"):
            return repositories.get_partner(self.conn, user_id)

    def partner_exists(self, user_id: str) -> bool:
        return self.get_partner(user_id) is not None

    def get_source_total_reward(self, user_id: str) -> Optional[Decimal]:
        with _store_errors("get_source_total_reward"):
            return repositories.get_source_total_reward(self.conn, user_id)

    def list_snapshots(self, recipient_id: str) -> List[CommissionRow]:
        with _store_errors("list_snapshots"):
            return repositories.list_snapshots(self.conn, recipient_id)

    # ------
    # writes
    # ------

    def set_partner_rank(
        self, user_id: str, rank: str, is_auto_ranked: Optional[bool] = None
    ) -> bool:
        self._forget()
        with _store_errors("set_partner_rank"):
            return repositories.set_partner_rank(self.conn, user_id, rank, is_auto_ranked)

    def create_partner(self, user_id: str) -> None:
        with _store_errors("create_partner"):
            repositories.create_partner(self.conn, user_id)

    def set_partner_type(self, user_id: str, partner_type: str, changed_at: datetime) -> bool:
        with _store_errors("set_partner_type"):
            return repositories.set_partner_type(self.conn, user_id, partner_type, changed_at)

    def insert_own_referral_id(self, user_id: str, referral_code: str) -> None:
        self._forget()
        with _store_errors("insert_own_referral_id"):
            repositories.insert_own_referral_id(self.conn, user_id, referral_code)

    def replace_snapshots(self, recipient_id: str, rows: Iterable[CommissionRow]) -> None:
        with _store_errors("replace_snapshots"):
            repositories.replace_snapshots(self.conn, recipient_id, rows)
