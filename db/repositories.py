from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any, List, Iterable

from psycopg import Connection

from models import CommissionRow, PartnerRecord, UserRecord


_USER_COLUMNS = "id, email, partner_rank, referral_id, status"

_SNAPSHOT_COLUMNS = (
    "recipient_id, source_partner_id, source_email, source_rank, depth, "
    "chain_root_id, source_total_reward, commission_pool, tradi_fee, "
    "remaining_pool, your_role, your_cut, total_upliner_count, upliner_share, "
    "own_keep, total_chain_commission, snapshot_at"
)


def _user_from_row(row) -> UserRecord:
    return UserRecord(
        user_id=row[0],
        email=row[1],
        partner_rank=row[2],
        referral_id=row[3],
        status=row[4],
    )


def get_user(conn: Connection, user_id: str) -> Optional[UserRecord]:
    with conn.cursor() as cur:
        cur.execute(
            f"SELECT {_USER_COLUMNS} FROM users WHERE id = %s",
            (user_id,),
        )
        row = cur.fetchone()
    return _user_from_row(row) if row else None


def get_user_by_email(conn: Connection, email: str) -> Optional[UserRecord]:
    with conn.cursor() as cur:
        cur.execute(
            f"SELECT {_USER_COLUMNS} FROM users WHERE email = %s",
            (email,),
        )
        row = cur.fetchone()
    return _user_from_row(row) if row else None


def get_referral_code_owner(conn: Connection, referral_code: str) -> Optional[str]:
    """
    return the user_id owning `referral_code`, or None for an unknown code.
    """
    with conn.cursor() as cur:
        cur.execute(
            "SELECT id FROM own_referral_id_list WHERE own_referral_id = %s",
            (referral_code,),
        )
        row = cur.fetchone()
    return row[0] if row else None


def referral_code_exists(conn: Connection, referral_code: str) -> bool:
    with conn.cursor() as cur:
        cur.execute(
            "SELECT 1 FROM own_referral_id_list WHERE own_referral_id = %s",
            (referral_code,),
        )
        return cur.fetchone() is not None


def fetch_upline(
    conn: Connection,
    user_id: Optional[str] = None,
    referral_code: Optional[str] = None,
    max_hops: int = 50,
) -> List[Dict[str, Any]]:
    """
    load a whole upline in one round-trip with a recursive CTE.

    start either at a user (hop 0 is that user) or at a referral code
    (hop 1 is the code's owner). each returned row carries `via_code`,
    the referral code that resolved to that row's user, so callers can
    rebuild the code -> owner edges. the CTE stops on cycles and at max_hops.
    """
    if user_id is not None:
        base = f"""
            SELECT {_USER_COLUMNS}, NULL::text AS via_code, 0 AS hop, ARRAY[id] AS path
            FROM users
            WHERE id = %(start)s
        """
        start = user_id
    elif referral_code is not None:
        base = """
            SELECT u.id, u.email, u.partner_rank, u.referral_id, u.status,
                   o.own_referral_id AS via_code, 1 AS hop, ARRAY[u.id] AS path
            FROM own_referral_id_list o
            JOIN users u ON u.id = o.id
            WHERE o.own_referral_id = %(start)s
        """
        start = referral_code
    else:
        raise ValueError("fetch_upline needs a user_id or a referral_code")

    with conn.cursor() as cur:
        cur.execute(
            f"""
            WITH RECURSIVE upline AS (
                {base}
                UNION ALL
                SELECT p.id, p.email, p.partner_rank, p.referral_id, p.status,
                       up.referral_id, up.hop + 1, up.path || p.id
                FROM upline up
                JOIN own_referral_id_list o ON o.own_referral_id = up.referral_id
                JOIN users p ON p.id = o.id
                WHERE up.hop < %(max_hops)s
                  AND NOT p.id = ANY(up.path)
            )
            SELECT id, email, partner_rank, referral_id, status, via_code
            FROM upline
            ORDER BY hop
            """,
            {"start": start, "max_hops": max_hops},
        )
        rows = cur.fetchall()

    return [
        {"user": _user_from_row(r[:5]), "via_code": r[5]}
        for r in rows
    ]


def get_downline_ids(
    conn: Connection,
    root_user_id: str,
    max_levels: int = 50,
) -> List[str]:
    """
    every user below root_user_id, level by level (breadth first).
    a user reached twice (cycle) is only returned once and never expanded again.
    """
    seen = {root_user_id}
    result: List[str] = []
    current_level_ids = [root_user_id]

    for _ in range(max_levels):
        if not current_level_ids:
            break

        # all children of the current level in one query using ANY
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT u.id
                FROM users u
                JOIN own_referral_id_list o ON o.own_referral_id = u.referral_id
                WHERE o.id = ANY(%s)
                ORDER BY u.id
                """,
                (current_level_ids,),
            )
            rows = cur.fetchall()

        next_level = []
        for (child_id,) in rows:
            if child_id in seen:
                continue
            seen.add(child_id)
            next_level.append(child_id)

        result.extend(next_level)
        current_level_ids = next_level

    return result


def set_partner_rank(
    conn: Connection,
    user_id: str,
    rank: str,
    is_auto_ranked: Optional[bool] = None,
) -> bool:
    """
    overwrite partner_rank (and is_auto_ranked when given).
    returns False when no such user exists.
    """
    with conn.cursor() as cur:
        if is_auto_ranked is None:
            cur.execute(
                "UPDATE users SET partner_rank = %s, updated_at = NOW() WHERE id = %s",
                (rank, user_id),
            )
        else:
            cur.execute(
                """
                UPDATE users
                SET partner_rank = %s, is_auto_ranked = %s, updated_at = NOW()
                WHERE id = %s
                """,
                (rank, is_auto_ranked, user_id),
            )
        return cur.rowcount == 1


def get_partner(conn: Connection, user_id: str) -> Optional[PartnerRecord]:
    with conn.cursor() as cur:
        cur.execute(
            "SELECT id, partner_type, partner_type_change_date FROM partners WHERE id = %s",
            (user_id,),
        )
        row = cur.fetchone()
    if row is None:
        return None
    return PartnerRecord(user_id=row[0], partner_type=row[1], partner_type_change_date=row[2])


def create_partner(conn: Connection, user_id: str) -> None:
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO partners (id, platform_accounts, platform_ref_links, selected_platform)
            VALUES (%s, '[]'::jsonb, '[]'::jsonb, '[]'::jsonb)
            """,
            (user_id,),
        )


def set_partner_type(
    conn: Connection,
    user_id: str,
    partner_type: str,
    changed_at: datetime,
) -> bool:
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE partners
            SET partner_type = %s, partner_type_change_date = %s
            WHERE id = %s
            """,
            (partner_type, changed_at, user_id),
        )
        return cur.rowcount == 1


def insert_own_referral_id(conn: Connection, user_id: str, referral_code: str) -> None:
    with conn.cursor() as cur:
        cur.execute(
            "INSERT INTO own_referral_id_list (id, own_referral_id) VALUES (%s, %s)",
            (user_id, referral_code),
        )


def get_source_total_reward(conn: Connection, user_id: str) -> Optional[Decimal]:
    """
    sum of total_partner_reward over every platform row of the partner.
    None when the partner has no partner_detail rows at all.
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT COUNT(*), COALESCE(SUM(total_partner_reward), 0)
            FROM partner_detail
            WHERE id = %s
            """,
            (user_id,),
        )
        count, total = cur.fetchone()
    if count == 0:
        return None
    return Decimal(total)


def replace_snapshots(
    conn: Connection,
    recipient_id: str,
    rows: Iterable[CommissionRow],
) -> None:
    """
    drop the recipient's old snapshot rows and write the new set.
    must run inside the caller's transaction so readers never see a half-written set.
    """
    with conn.cursor() as cur:
        cur.execute(
            "DELETE FROM chain_commission_snapshots WHERE recipient_id = %s",
            (recipient_id,),
        )
        for row in rows:
            cur.execute(
                f"""
                INSERT INTO chain_commission_snapshots ({_SNAPSHOT_COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    row.recipient_id,
                    row.source_partner_id,
                    row.source_email,
                    row.source_rank,
                    row.depth,
                    row.chain_root_id,
                    row.source_total_reward,
                    row.commission_pool,
                    row.tradi_fee,
                    row.remaining_pool,
                    row.your_role,
                    row.your_cut,
                    row.total_upliner_count,
                    row.upliner_share,
                    row.own_keep,
                    row.total_chain_commission,
                    row.snapshot_at,
                ),
            )


def list_snapshots(conn: Connection, recipient_id: str) -> List[CommissionRow]:
    with conn.cursor() as cur:
        cur.execute(
            f"""
            SELECT {_SNAPSHOT_COLUMNS}
            FROM chain_commission_snapshots
            WHERE recipient_id = %s
            ORDER BY snapshot_at DESC, depth, source_partner_id
            """,
            (recipient_id,),
        )
        rows = cur.fetchall()

    return [CommissionRow(*r) for r in rows]
