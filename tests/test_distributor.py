import random

import pytest

from volumebot.distributor import plan, ratio_of, split, split_by_weights


def test_split_example_weights():
    shares = split_by_weights(10_000_000, [40, 35, 25])
    assert shares == [4_000_000, 3_500_000, 2_500_000]
    assert sum(shares) <= 10_000_000


@pytest.mark.parametrize("seed", range(5))
def test_split_bounds_hold_for_random_inputs(seed):
    rng = random.Random(seed)
    for _ in range(200):
        total = rng.randint(0, 10**12)
        n = rng.randint(1, 50)
        shares = split(total, n, rng=rng)
        assert len(shares) == n
        assert all(x >= 0 for x in shares)
        assert sum(shares) <= total
        # flooring loses less than one unit per share
        assert total - sum(shares) < n


def test_split_is_not_degenerate():
    rng = random.Random(1234)
    uneven = 0
    for _ in range(50):
        shares = split(1_000_000_000, 5, rng=rng)
        if len(set(shares)) > 1:
            uneven += 1
    assert uneven > 40


def test_split_edge_cases():
    assert split(1000, 0) == []
    assert split(0, 3) == [0, 0, 0]
    assert split(1, 3, rng=random.Random(0)) in ([0, 0, 0], [1, 0, 0], [0, 1, 0], [0, 0, 1])


def test_plan_extraction_order_example():
    p = plan(1_000_000_000, 0.38, 0.01, True, wallet_count=3, max_wallets=5, rng=random.Random(3))
    assert p.reserve == 380_000_000
    assert p.fee == 6_200_000
    assert p.distributable == 613_800_000
    assert len(p.shares) == 3
    assert sum(p.shares) <= p.distributable
    assert p.leftover == p.distributable - sum(p.shares)


def test_plan_without_flat_fee():
    p = plan(1_000_000_000, 0.38, 0.01, False, wallet_count=2, max_wallets=5)
    assert p.fee == 0
    assert p.distributable == 620_000_000


def test_plan_caps_wallets_at_max():
    p = plan(10_000, 0.38, 0.01, True, wallet_count=8, max_wallets=4)
    assert len(p.shares) == 4


def test_plan_formula_matches_manual_computation():
    for balance in (0, 1, 999, 123_456_789, 5 * 10**9 + 7):
        p = plan(balance, 0.38, 0.01, True, wallet_count=1, max_wallets=1)
        reserve = int(balance * 0.38)
        fee = int((balance - reserve) * 0.01)
        assert (p.reserve, p.fee, p.distributable) == (reserve, fee, balance - reserve - fee)


def test_ratio_of_non_positive_is_zero():
    assert ratio_of(0, 0.38) == 0
    assert ratio_of(-5, 0.38) == 0
    assert ratio_of(100, 0) == 0
