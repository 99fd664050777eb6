from dataclasses import dataclass, field
from decimal import Decimal, ROUND_DOWN
from typing import Dict, Optional

from errors import NotFoundError
from models import ADMIN_RANKS, NO_RANK, CommissionRow, ReferralChain, UserRecord


MONEY = Decimal("0.000001")

ROLE_ADMIN = "admin"
ROLE_DIRECT = "direct"
ROLE_INDIRECT = "indirect"


def _q(value: Decimal) -> Decimal:
    return value.quantize(MONEY, rounding=ROUND_DOWN)


@dataclass(frozen=True)
class CommissionPolicy:
    """
    commission_pool_pct: share of the source's reward that feeds the pool
    platform_fee_pct:    share of the pool kept by the platform (tradi_fee)
    upline_share_pct:    share of the remaining pool split between upliners;
                         the rest is the source's own keep
    rank_upline_share_pct: per source-rank override of upline_share_pct
    """

    commission_pool_pct: Decimal = Decimal("0.20")
    platform_fee_pct: Decimal = Decimal("0.10")
    upline_share_pct: Decimal = Decimal("0.50")
    rank_upline_share_pct: Dict[str, Decimal] = field(default_factory=dict)

    def upline_share_for(self, source_rank: Optional[str]) -> Decimal:
        if source_rank is not None and source_rank in self.rank_upline_share_pct:
            return Decimal(self.rank_upline_share_pct[source_rank])
        return Decimal(self.upline_share_pct)


def allocate(
    source_total_reward,
    upliner_count: int,
    policy: CommissionPolicy,
    source_rank: Optional[str] = None,
) -> Dict[str, Decimal]:
    """
    split one source's reward across its upline.

    every upliner gets the same upliner_share. rounding is down to 6 dp and
    the dust stays with the source, so
    tradi_fee + own_keep + total_chain_commission == commission_pool.
    """
    reward = Decimal(source_total_reward)
    if reward < 0:
        raise ValueError(f"source reward cannot be negative: {reward}")

    commission_pool = _q(reward * Decimal(policy.commission_pool_pct))
    tradi_fee = _q(commission_pool * Decimal(policy.platform_fee_pct))
    remaining_pool = commission_pool - tradi_fee

    if upliner_count > 0:
        upline_total = remaining_pool * policy.upline_share_for(source_rank)
        upliner_share = _q(upline_total / upliner_count)
    else:
        upliner_share = Decimal("0")

    total_chain_commission = upliner_share * upliner_count
    own_keep = remaining_pool - total_chain_commission

    return {
        "source_total_reward": reward,
        "commission_pool": commission_pool,
        "tradi_fee": tradi_fee,
        "remaining_pool": remaining_pool,
        "upliner_share": upliner_share,
        "total_chain_commission": total_chain_commission,
        "own_keep": own_keep,
    }


def classify_role(recipient: UserRecord, depth: int) -> str:
    """depth is the recipient's hop distance above the source (1 = direct referrer)."""
    if recipient.partner_rank in ADMIN_RANKS:
        return ROLE_ADMIN
    if depth == 1:
        return ROLE_DIRECT
    return ROLE_INDIRECT


def commission_row(
    recipient_id: str,
    chain: ReferralChain,
    source_total_reward,
    policy: CommissionPolicy,
) -> CommissionRow:
    """
    the recipient's view of the source at the bottom of `chain`.
    raises NotFoundError when the recipient is not one of the source's upliners.
    """
    source = chain.members[-1]
    upliners = chain.upliners

    position = next(
        (i for i, m in enumerate(upliners) if m.user_id == recipient_id),
        None,
    )
    if position is None:
        raise NotFoundError(
            f"User {recipient_id} is not an upliner of {source.user_id}"
        )

    recipient = upliners[position]
    depth = len(upliners) - position
    split = allocate(source_total_reward, len(upliners), policy, source.partner_rank)

    return CommissionRow(
        recipient_id=recipient_id,
        source_partner_id=source.user_id,
        source_email=source.email,
        source_rank=source.partner_rank or NO_RANK,
        depth=depth,
        chain_root_id=chain.root_id,
        source_total_reward=split["source_total_reward"],
        commission_pool=split["commission_pool"],
        tradi_fee=split["tradi_fee"],
        remaining_pool=split["remaining_pool"],
        your_role=classify_role(recipient, depth),
        your_cut=split["upliner_share"],
        total_upliner_count=len(upliners),
        upliner_share=split["upliner_share"],
        own_keep=split["own_keep"],
        total_chain_commission=split["total_chain_commission"],
    )
