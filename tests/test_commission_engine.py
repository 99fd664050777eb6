from decimal import Decimal

import pytest

from commission_engine import CommissionPolicy, allocate, classify_role, commission_row
from errors import NotFoundError
from models import UserRecord
from referral_engine import resolve_chain


POLICY = CommissionPolicy(
    commission_pool_pct=Decimal("0.20"),
    platform_fee_pct=Decimal("0.10"),
    upline_share_pct=Decimal("0.50"),
)


def _conserved(split):
    return (
        split["tradi_fee"] + split["own_keep"] + split["total_chain_commission"]
        == split["commission_pool"]
    )


def test_basic_split_three_upliners():
    """
    1000 reward: pool 200, fee 20, remaining 180,
    half of it (90) split between 3 upliners.
    """
    split = allocate(Decimal("1000"), 3, POLICY)

    assert split["commission_pool"] == Decimal("200.000000")
    assert split["tradi_fee"] == Decimal("20.000000")
    assert split["remaining_pool"] == Decimal("180.000000")
    assert split["upliner_share"] == Decimal("30.000000")
    assert split["total_chain_commission"] == Decimal("90.000000")
    assert split["own_keep"] == Decimal("90.000000")
    assert _conserved(split)


def test_rounding_dust_stays_with_source():
    split = allocate(Decimal("10"), 7, POLICY)

    assert split["upliner_share"] == Decimal("0.128571")
    assert split["total_chain_commission"] == Decimal("0.899997")
    assert split["own_keep"] == Decimal("0.900003")
    assert _conserved(split)


def test_no_upliners_keeps_whole_remaining_pool():
    split = allocate(Decimal("500"), 0, POLICY)

    assert split["upliner_share"] == Decimal("0")
    assert split["total_chain_commission"] == Decimal("0")
    assert split["own_keep"] == split["remaining_pool"] == Decimal("90.000000")
    assert _conserved(split)


def test_zero_reward():
    split = allocate(Decimal("0"), 4, POLICY)
    assert split["commission_pool"] == Decimal("0")
    assert split["upliner_share"] == Decimal("0")
    assert _conserved(split)


def test_rank_override_of_upline_share():
    policy = CommissionPolicy(rank_upline_share_pct={"Vàng": Decimal("1")})

    split = allocate(Decimal("200"), 3, policy, source_rank="Vàng")
    assert split["upliner_share"] == Decimal("12.000000")
    assert split["own_keep"] == Decimal("0")

    # other ranks use the default share
    split = allocate(Decimal("200"), 3, policy, source_rank="Bạc")
    assert split["upliner_share"] == Decimal("6.000000")


def test_negative_reward_rejected():
    with pytest.raises(ValueError):
        allocate(Decimal("-1"), 1, POLICY)


@pytest.mark.parametrize(
    "rank, depth, role",
    [
        ("ADMIN", 1, "admin"),
        ("SALE", 4, "admin"),
        ("Vàng", 1, "direct"),
        ("Vàng", 2, "indirect"),
        ("None", 3, "indirect"),
    ],
)
def test_classify_role(rank, depth, role):
    assert classify_role(UserRecord(user_id="U", partner_rank=rank), depth) == role


def test_commission_row_roles_and_depths(chain_store):
    chain = resolve_chain(chain_store, "T")

    direct = commission_row("R2", chain, Decimal("200"), POLICY)
    indirect = commission_row("R1", chain, Decimal("200"), POLICY)
    admin = commission_row("ADMIN1", chain, Decimal("200"), POLICY)

    assert (direct.your_role, direct.depth) == ("direct", 1)
    assert (indirect.your_role, indirect.depth) == ("indirect", 2)
    assert (admin.your_role, admin.depth) == ("admin", 3)

    for row in (direct, indirect, admin):
        assert row.source_partner_id == "T"
        assert row.chain_root_id == "ADMIN1"
        assert row.total_upliner_count == 3
        assert row.your_cut == Decimal("6.000000")
        assert row.total_chain_commission == Decimal("18.000000")
        assert row.own_keep == Decimal("18.000000")


def test_commission_row_for_non_upliner(chain_store):
    chain = resolve_chain(chain_store, "T")

    with pytest.raises(NotFoundError):
        commission_row("S", chain, Decimal("200"), POLICY)

    # the source is not its own upliner
    with pytest.raises(NotFoundError):
        commission_row("T", chain, Decimal("200"), POLICY)


def test_commission_row_to_dict_formats_money(chain_store):
    chain = resolve_chain(chain_store, "T")
    data = commission_row("R2", chain, Decimal("200"), POLICY).to_dict()

    assert data["your_cut"] == "6.000000"
    assert data["source_total_reward"] == "200.000000"
    assert data["your_role"] == "direct"
    assert data["snapshot_at"] is None
