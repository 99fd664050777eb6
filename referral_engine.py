from typing import Callable, Optional, Set

from loguru import logger

from errors import NotFoundError, ValidationError
from models import ReferralChain, UserRecord, is_system_rank
from store import ReferralStore


MAX_CHAIN_HOPS = 50


def walk_upline(
    store: ReferralStore,
    referral_code: Optional[str],
    visit: Callable[[UserRecord], bool],
    visited: Optional[Set[str]] = None,
    max_hops: int = MAX_CHAIN_HOPS,
) -> int:
    """
    follow referral codes upward starting at `referral_code`.

    each code is resolved to its owner and the owner is handed to `visit`;
    if `visit` returns False the walk stops after that member.
    the walk also stops (without raising) when:
      - the code is empty
      - nobody owns the code (dangling referral)
      - the owner was already visited (self-referral or cycle)
      - the owner's user row is missing
      - the owner's own referral_id is the code we just followed
      - max_hops members have been visited
    store errors propagate: a failing hop aborts the whole walk.

    returns the number of members handed to `visit`.
    """
    if visited is None:
        visited = set()

    hops = 0
    code = referral_code

    while code:
        if hops >= max_hops:
            logger.warning("upline walk hit the {} hop limit at code {}", max_hops, code)
            break

        owner_id = store.get_referral_code_owner(code)
        if owner_id is None:
            logger.debug("referral code {} has no owner, end of chain", code)
            break

        if owner_id in visited:
            logger.warning(
                "referral loop detected at user {} (code {}), stopping walk",
                owner_id,
                code,
            )
            break

        owner = store.get_user(owner_id)
        if owner is None:
            logger.debug("owner {} of code {} has no user row, end of chain", owner_id, code)
            break

        visited.add(owner_id)
        hops += 1

        if not visit(owner):
            break

        if owner.referral_id == code:
            logger.warning("user {} refers to their own code {}, stopping walk", owner_id, code)
            break

        code = owner.referral_id

    return hops


def resolve_user_id(store: ReferralStore, identifier: Optional[str]) -> str:
    """
    accept a user id or an email (anything containing '@') and return the user id.
    """
    identifier = (identifier or "").strip()
    if not identifier:
        raise ValidationError("User ID is required")

    if "@" not in identifier:
        return identifier

    user = store.get_user_by_email(identifier)
    if user is None:
        raise NotFoundError("User not found")
    return user.user_id


def resolve_chain(
    store: ReferralStore,
    identifier: str,
    max_hops: int = MAX_CHAIN_HOPS,
) -> ReferralChain:
    """
    full upline of a user, root first and the user last.

    a dangling referral code, a self-referral or a cycle just truncates the
    chain; only an unknown starting user is an error.
    """
    user_id = resolve_user_id(store, identifier)

    store.prefetch_upline(user_id=user_id, max_hops=max_hops)

    start = store.get_user(user_id)
    if start is None:
        raise NotFoundError("User not found")

    members = [start]

    def prepend(member: UserRecord) -> bool:
        members.insert(0, member)
        return True

    depth = walk_upline(
        store,
        start.referral_id,
        prepend,
        visited={start.user_id},
        max_hops=max_hops,
    )

    chain = ReferralChain(
        user_id=start.user_id,
        depth=depth,
        direct_referrer_id=members[-2].user_id if len(members) > 1 else None,
        members=members,
    )

    logger.debug(
        "resolved referral chain for {}: {}",
        start.user_id,
        " -> ".join(m.user_id for m in members),
    )
    return chain


def count_standard_partners_above(
    store: ReferralStore,
    referral_code: Optional[str],
    max_hops: int = MAX_CHAIN_HOPS,
) -> int:
    """
    walk up from the referral code a new partner signed up with and count the
    standard (non system rank) partners above them. system ranks sit at the
    top of every chain, so the walk stops at the first one.
    """
    if not referral_code:
        return 0

    store.prefetch_upline(referral_code=referral_code, max_hops=max_hops)

    count = 0

    def count_standard(member: UserRecord) -> bool:
        nonlocal count
        if is_system_rank(member.partner_rank):
            return False
        count += 1
        return True

    walk_upline(store, referral_code, count_standard, max_hops=max_hops)

    logger.debug("{} standard partners above code {}", count, referral_code)
    return count
