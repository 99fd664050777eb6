from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional


ADMIN = "ADMIN"
SALE = "SALE"
NO_RANK = "None"

# ranks that sit above the partner tiers; they never count toward chain position
SYSTEM_RANKS = frozenset({ADMIN, SALE, NO_RANK})

# ranks that make a recipient an "admin" in commission rows
ADMIN_RANKS = frozenset({ADMIN, SALE})


def is_system_rank(rank: Optional[str]) -> bool:
    # a missing rank column is the same as the literal "None" rank
    return rank is None or rank in SYSTEM_RANKS


@dataclass(frozen=True)
class UserRecord:
    user_id: str
    email: Optional[str] = None
    partner_rank: Optional[str] = NO_RANK
    referral_id: Optional[str] = None
    status: Optional[str] = None

    def as_chain_member(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "email": self.email,
            "partnerRank": self.partner_rank,
        }


@dataclass
class ReferralChain:
    """
    upline of `user_id`, ordered root first and the user last.
    depth is the number of hops actually walked (len(members) - 1).
    """

    user_id: str
    depth: int
    direct_referrer_id: Optional[str]
    members: List[UserRecord] = field(default_factory=list)

    @property
    def chain_length(self) -> int:
        return len(self.members)

    @property
    def root_id(self) -> Optional[str]:
        return self.members[0].user_id if self.members else None

    @property
    def upliners(self) -> List[UserRecord]:
        return self.members[:-1]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "depth": self.depth,
            "directReferrerId": self.direct_referrer_id,
            "chain": [m.as_chain_member() for m in self.members],
            "chainLength": self.chain_length,
        }


@dataclass
class CommissionRow:
    """one (recipient, source) commission breakdown, live or from a snapshot."""

    recipient_id: str
    source_partner_id: str
    source_email: Optional[str]
    source_rank: Optional[str]
    depth: int
    chain_root_id: Optional[str]
    source_total_reward: Decimal
    commission_pool: Decimal
    tradi_fee: Decimal
    remaining_pool: Decimal
    your_role: str
    your_cut: Decimal
    total_upliner_count: int
    upliner_share: Decimal
    own_keep: Decimal
    total_chain_commission: Decimal
    snapshot_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        def money(value: Decimal) -> str:
            return f"{value:.6f}"

        return {
            "recipient_id": self.recipient_id,
            "source_partner_id": self.source_partner_id,
            "source_email": self.source_email,
            "source_rank": self.source_rank,
            "depth": self.depth,
            "chain_root_id": self.chain_root_id,
            "source_total_reward": money(self.source_total_reward),
            "commission_pool": money(self.commission_pool),
            "tradi_fee": money(self.tradi_fee),
            "remaining_pool": money(self.remaining_pool),
            "your_role": self.your_role,
            "your_cut": money(self.your_cut),
            "total_upliner_count": self.total_upliner_count,
            "upliner_share": money(self.upliner_share),
            "own_keep": money(self.own_keep),
            "total_chain_commission": money(self.total_chain_commission),
            "snapshot_at": self.snapshot_at.isoformat() if self.snapshot_at else None,
        }


@dataclass(frozen=True)
class RankAssignment:
    rank: str
    is_auto_ranked: bool


@dataclass(frozen=True)
class PartnerRecord:
    user_id: str
    partner_type: Optional[str] = None
    partner_type_change_date: Optional[datetime] = None
