"""
partner rank rules.

a new partner's first rank depends only on where they land in the referral
chain: the first four standard partners of a chain are auto-ranked into the
top tiers as a launch incentive, everyone deeper starts at the bottom tier.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from loguru import logger

from errors import NotFoundError, ValidationError
from models import ADMIN, SALE, RankAssignment
from referral_engine import MAX_CHAIN_HOPS, count_standard_partners_above
from store import ReferralStore


BASE_RANK = "Đồng"

# chain position -> rank; position 5+ gets BASE_RANK
CHAIN_POSITION_RANK = {
    1: "Kim Cương",
    2: "Bạch Kim",
    3: "Vàng",
    4: "Bạc",
}

AUTO_RANK_MAX_POSITION = 4

# lots needed to leave each rank; None marks the top rank
LOT_UPGRADE_THRESHOLDS: Dict[str, Optional[int]] = {
    "Đồng": 100,
    "Bạc": 500,
    "Vàng": 1_000,
    "Bạch Kim": 2_000,
    "Kim Cương": None,
}

NEXT_RANK: Dict[str, Optional[str]] = {
    "Đồng": "Bạc",
    "Bạc": "Vàng",
    "Vàng": "Bạch Kim",
    "Bạch Kim": "Kim Cương",
    "Kim Cương": None,
}

PARTNER_TYPE_RANK = {
    "DTT": "Đồng",
    "DLHT": "Ruby",
}


def rank_for_position(chain_position: int) -> RankAssignment:
    if chain_position < 1:
        raise ValidationError(f"chain position must be >= 1, got {chain_position}")
    return RankAssignment(
        rank=CHAIN_POSITION_RANK.get(chain_position, BASE_RANK),
        is_auto_ranked=chain_position <= AUTO_RANK_MAX_POSITION,
    )


def assign_initial_rank(
    store: ReferralStore,
    user_id: str,
    referral_code_entered: Optional[str],
    max_hops: int = MAX_CHAIN_HOPS,
) -> RankAssignment:
    """
    compute and persist the first rank of a freshly registered partner.

    always overwrites the stored rank, so it must only run once per user
    (at registration). a failed write propagates; registration is then not
    complete.
    """
    standard_above = count_standard_partners_above(store, referral_code_entered, max_hops)
    chain_position = standard_above + 1
    assignment = rank_for_position(chain_position)

    logger.info(
        "assigning rank {} to {} (code {}, {} standard partners above, "
        "position {}, auto ranked: {})",
        assignment.rank,
        user_id,
        referral_code_entered,
        standard_above,
        chain_position,
        assignment.is_auto_ranked,
    )

    if not store.set_partner_rank(user_id, assignment.rank, assignment.is_auto_ranked):
        raise NotFoundError(f"User {user_id} not found")

    return assignment


def get_rank_progress(current_rank: str, total_lots: float) -> Dict[str, Any]:
    """
    progress toward the next rank for display.
    unknown ranks and the top rank report as max rank.
    """
    required_lots = LOT_UPGRADE_THRESHOLDS.get(current_rank)
    next_rank = NEXT_RANK.get(current_rank)

    if not required_lots or not next_rank:
        return {
            "is_max_rank": True,
            "next_rank": None,
            "required_lots": None,
            "current_lots": total_lots,
            "progress": 100,
            "remaining_lots": 0,
        }

    return {
        "is_max_rank": False,
        "next_rank": next_rank,
        "required_lots": required_lots,
        "current_lots": total_lots,
        "progress": min(total_lots / required_lots * 100, 100),
        "remaining_lots": max(required_lots - total_lots, 0),
    }


def check_referrer_status(store: ReferralStore, user_id: str) -> Dict[str, Any]:
    """
    decide which partner types a user may pick, from their direct referrer.
    users referred by a base-rank partner or by ADMIN/SALE staff only get DTT.
    """
    user = store.get_user(user_id)
    if user is None or not user.referral_id:
        return {"show_only_tradi": False, "reason": "no_referrer"}

    referrer_id = store.get_referral_code_owner(user.referral_id)
    if referrer_id is None:
        return {"show_only_tradi": False, "reason": "referrer_not_found"}

    referrer = store.get_user(referrer_id)
    if referrer is None:
        return {"show_only_tradi": False, "reason": "referrer_data_not_found"}

    is_lowest_rank = referrer.partner_rank == BASE_RANK
    is_admin_or_sale = referrer.status in (ADMIN, SALE)

    if is_lowest_rank:
        reason = "referrer_lowest_rank"
    elif is_admin_or_sale:
        reason = "referrer_admin_or_sale"
    else:
        reason = "eligible_for_both"

    return {
        "show_only_tradi": is_lowest_rank or is_admin_or_sale,
        "reason": reason,
        "referrer_id": referrer_id,
        "referrer_rank": referrer.partner_rank,
        "referrer_status": referrer.status,
    }


def change_partner_type(
    store: ReferralStore,
    user_id: str,
    partner_type: str,
    cooldown_days: int = 30,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    switch a partner between DTT and DLHT, at most once per cooldown window.
    the rank follows the type: DTT -> Đồng, DLHT -> Ruby.
    """
    if partner_type not in PARTNER_TYPE_RANK:
        raise ValidationError("Invalid partner type")

    partner = store.get_partner(user_id)
    if partner is None:
        raise NotFoundError("Partner not found")

    if partner.partner_type == partner_type:
        raise ValidationError("Partner type is already set to this value")

    now = now or datetime.now(timezone.utc)
    if partner.partner_type_change_date is not None:
        days_since = (now - partner.partner_type_change_date).days
        if days_since < cooldown_days:
            remaining = cooldown_days - days_since
            raise ValidationError(
                f"Partner type can only be changed every {cooldown_days} days, "
                f"{remaining} days remaining"
            )

    new_rank = PARTNER_TYPE_RANK[partner_type]
    store.set_partner_type(user_id, partner_type, now)
    store.set_partner_rank(user_id, new_rank)

    logger.info("partner {} switched to {} with rank {}", user_id, partner_type, new_rank)

    return {
        "user_id": user_id,
        "partner_type": partner_type,
        "change_date": now,
        "rank": new_rank,
    }
