from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from loguru import logger

from commission_engine import CommissionPolicy, commission_row
from errors import NotFoundError
from models import CommissionRow
from referral_engine import MAX_CHAIN_HOPS, resolve_chain, resolve_user_id
from store import ReferralStore


def compute_commission(
    store: ReferralStore,
    recipient_id: str,
    source_id: str,
    policy: CommissionPolicy,
    max_hops: int = MAX_CHAIN_HOPS,
) -> CommissionRow:
    """
    live commission breakdown of one (recipient, source) pair.

    walks the source's upline; raises NotFoundError when either user is
    unknown or the recipient is not in that upline.
    """
    if store.get_user(recipient_id) is None:
        raise NotFoundError(f"User {recipient_id} not found")

    chain = resolve_chain(store, source_id, max_hops=max_hops)
    reward = store.get_source_total_reward(chain.user_id) or Decimal("0")
    return commission_row(recipient_id, chain, reward, policy)


def compute_live_commissions(
    store: ReferralStore,
    recipient_id: str,
    policy: CommissionPolicy,
    max_hops: int = MAX_CHAIN_HOPS,
) -> List[CommissionRow]:
    """
    every partner below the recipient, with the recipient's cut of each.

    only downline users with partner statistics count as sources. a downline
    user whose resolved upline no longer contains the recipient (for example
    because a loop truncated it) is skipped.
    """
    if store.get_user(recipient_id) is None:
        raise NotFoundError(f"User {recipient_id} not found")

    rows: List[CommissionRow] = []
    for source_id in store.get_downline_ids(recipient_id, max_levels=max_hops):
        reward = store.get_source_total_reward(source_id)
        if reward is None:
            continue

        chain = resolve_chain(store, source_id, max_hops=max_hops)
        if recipient_id not in {m.user_id for m in chain.upliners}:
            logger.warning(
                "{} is below {} but its resolved chain does not reach them, skipping",
                source_id,
                recipient_id,
            )
            continue

        rows.append(commission_row(recipient_id, chain, reward, policy))

    rows.sort(key=lambda r: (r.depth, r.source_partner_id))
    logger.debug("computed {} live commission rows for {}", len(rows), recipient_id)
    return rows


def materialize_snapshots(
    store: ReferralStore,
    recipient_id: str,
    policy: CommissionPolicy,
    snapshot_at: Optional[datetime] = None,
    max_hops: int = MAX_CHAIN_HOPS,
) -> List[CommissionRow]:
    """
    recompute the recipient's rows live and replace their stored snapshot.
    all rows of one run share the same snapshot_at.
    """
    snapshot_at = snapshot_at or datetime.now(timezone.utc)

    rows = compute_live_commissions(store, recipient_id, policy, max_hops=max_hops)
    for row in rows:
        row.snapshot_at = snapshot_at

    store.replace_snapshots(recipient_id, rows)

    logger.info(
        "materialized {} commission snapshot rows for {} at {}",
        len(rows),
        recipient_id,
        snapshot_at.isoformat(),
    )
    return rows


def get_snapshots(store: ReferralStore, identifier: str) -> List[CommissionRow]:
    """
    stored snapshot rows for a recipient id or email, newest first.
    an empty list means no snapshot was generated yet, not an error.
    """
    recipient_id = resolve_user_id(store, identifier)
    return store.list_snapshots(recipient_id)
