import re
import secrets
from typing import Any, Dict, Optional

from loguru import logger

from errors import NotFoundError, ReferralCodeExhaustedError, ValidationError
from rank_engine import assign_initial_rank
from referral_engine import MAX_CHAIN_HOPS
from store import ReferralStore


USER_ID_PATTERN = re.compile(r"^[A-Za-z0-9]+$")
REFERRAL_CODE_PATTERN = re.compile(r"^[A-Za-z0-9]+-[0-9]{4}$")


def validate_referral_code(referral_code: str) -> str:
    referral_code = referral_code.strip()
    if not REFERRAL_CODE_PATTERN.match(referral_code):
        raise ValidationError(f"Malformed referral code: {referral_code!r}")
    return referral_code


def generate_referral_code(store: ReferralStore, user_id: str, max_attempts: int = 10) -> str:
    """
    pick a free `<user_id>-NNNN` code (NNNN in 1000..9999).
    gives up after max_attempts collisions.
    """
    for _ in range(max_attempts):
        candidate = f"{user_id}-{1000 + secrets.randbelow(9000)}"
        if not store.referral_code_exists(candidate):
            return candidate

    raise ReferralCodeExhaustedError(
        f"Failed to generate unique referral ID for {user_id} after {max_attempts} attempts"
    )


def register_partner(
    store: ReferralStore,
    user_id: str,
    referral_code_entered: Optional[str] = None,
    max_code_attempts: int = 10,
    max_hops: int = MAX_CHAIN_HOPS,
) -> Dict[str, Any]:
    """
    turn an existing user into a partner.

    rules:
      - user must exist and must not already be a partner
      - the partner gets a fresh unique referral code of their own
      - the initial rank comes from the code they signed up with
        (their stored referral_id when none is passed in)

    the caller owns the transaction: commit on success, roll back on any error.
    """
    user_id = (user_id or "").strip()
    if not user_id:
        raise ValidationError("User ID is required")
    if not USER_ID_PATTERN.match(user_id):
        raise ValidationError("User ID can only contain letters and numbers")

    if referral_code_entered:
        referral_code_entered = validate_referral_code(referral_code_entered)

    user = store.get_user(user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found")

    if store.partner_exists(user_id):
        raise ValidationError("User is already a partner")

    if not referral_code_entered:
        referral_code_entered = user.referral_id

    own_code = generate_referral_code(store, user_id, max_code_attempts)

    store.create_partner(user_id)
    store.insert_own_referral_id(user_id, own_code)

    assignment = assign_initial_rank(store, user_id, referral_code_entered, max_hops)

    logger.info(
        "registered partner {} with code {} and rank {}",
        user_id,
        own_code,
        assignment.rank,
    )

    return {
        "status": "registered",
        "user_id": user_id,
        "referral_id": own_code,
        "rank": assignment.rank,
        "is_auto_ranked": assignment.is_auto_ranked,
    }
