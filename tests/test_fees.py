from __future__ import annotations

from decimal import Decimal

import pytest

from app.payments.fees import calc_processing_fee_cents, dollars_to_cents


def _net(total):
    # processor takes 2.9% + 30c out of the total
    return total - (Decimal("0.029") * total + 30)


def test_fee_grosses_up_so_share_survives_processor_cut():
    fee = calc_processing_fee_cents(4217)
    assert fee == 157
    total = 4217 + fee
    assert _net(total) >= 4217
    assert _net(total - 1) < 4217


@pytest.mark.parametrize("share", [1, 99, 100, 1500, 2500, 10_000, 123_456])
def test_fee_covers_processor_cut(share):
    total = share + calc_processing_fee_cents(share)
    assert _net(total) >= share
    # one cent less would leave the payee short
    assert _net(total - 1) < share


@pytest.mark.parametrize("share", [0, -5, float("nan"), float("inf")])
def test_no_fee_for_non_positive_or_non_finite_share(share):
    assert calc_processing_fee_cents(share) == 0


def test_custom_rate_and_fixed():
    assert calc_processing_fee_cents(1000, rate=0, fixed_cents=0) == 0
    assert calc_processing_fee_cents(1000, rate=Decimal("0.5"), fixed_cents=0) == 1000


def test_invalid_rate_rejected():
    with pytest.raises(ValueError):
        calc_processing_fee_cents(1000, rate=1)


def test_dollars_to_cents_rounds_half_up():
    assert dollars_to_cents(Decimal("42.17")) == 4217
    assert dollars_to_cents(Decimal("0.005")) == 1
    assert dollars_to_cents(None) == 0
    assert dollars_to_cents(-3) == 0
