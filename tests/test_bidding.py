import threading

import pytest
from sqlmodel import Session, select

from bidding import (BID_AMOUNT_TOO_LOW, BUYER_NOT_FOUND, INVALID_AMOUNT,
                     INVALID_BIDDER, PRODUCT_NOT_FOUND_OR_NOT_ACTIVE,
                     BidRejected, place_bid)
from models import Bid, Product


def bids_for(session, product_id):
    return session.exec(select(Bid).where(Bid.product_id == product_id)).all()


def current_price(engine, product_id):
    with Session(engine) as other:
        return other.get(Product, product_id).price


def test_bid_above_price_is_accepted(session, product):
    bid = place_bid(session, product.id, 100.01, 'carol')

    assert bid.id is not None
    assert bid.amount == 100.01
    assert bid.bidder_name == 'carol'
    assert product.price == 100.01
    assert len(bids_for(session, product.id)) == 1


@pytest.mark.parametrize('amount', [100, 100.0, 99.99, 1])
def test_bid_not_above_price_is_rejected(engine, session, product, amount):
    with pytest.raises(BidRejected) as exc:
        place_bid(session, product.id, amount, 'carol')

    assert exc.value.code == BID_AMOUNT_TOO_LOW
    assert bids_for(session, product.id) == []
    assert current_price(engine, product.id) == 100.0


@pytest.mark.parametrize('amount', [0, -5, 'abc', '150', None, True,
                                    float('nan'), float('inf'), 10 ** 400])
def test_invalid_amount(session, product, amount):
    with pytest.raises(BidRejected) as exc:
        place_bid(session, product.id, amount, 'carol')

    assert exc.value.code == INVALID_AMOUNT
    assert bids_for(session, product.id) == []


def test_missing_product(session):
    with pytest.raises(BidRejected) as exc:
        place_bid(session, 999, 150, 'carol')
    assert exc.value.code == PRODUCT_NOT_FOUND_OR_NOT_ACTIVE


@pytest.mark.parametrize('status', ['sold', 'expired'])
def test_inactive_product(session, product, status):
    product.status = status
    session.add(product)
    session.commit()

    with pytest.raises(BidRejected) as exc:
        place_bid(session, product.id, 150, 'carol')
    assert exc.value.code == PRODUCT_NOT_FOUND_OR_NOT_ACTIVE
    assert bids_for(session, product.id) == []


def test_product_checked_before_amount(session):
    with pytest.raises(BidRejected) as exc:
        place_bid(session, 999, -1, 'carol')
    assert exc.value.code == PRODUCT_NOT_FOUND_OR_NOT_ACTIVE


def test_blank_bidder_is_rejected(session, product):
    with pytest.raises(BidRejected) as exc:
        place_bid(session, product.id, 150, '   ')
    assert exc.value.code == INVALID_BIDDER


def test_unknown_buyer_is_rejected(session, product):
    with pytest.raises(BidRejected) as exc:
        place_bid(session, product.id, 150, 'carol', buyer_id=42)
    assert exc.value.code == BUYER_NOT_FOUND


def test_buyer_name_defaults_from_id(session, product, buyer):
    bid = place_bid(session, product.id, 150, None, buyer_id=buyer.id)
    assert bid.buyer_id == buyer.id
    assert bid.bidder_name == f'Bidder {buyer.id}'


def test_sequential_bids_ratchet_price(session, product):
    place_bid(session, product.id, 150, 'carol')
    place_bid(session, product.id, 160, 'dave')

    assert product.price == 160
    assert sorted(b.amount for b in bids_for(session, product.id)) == [150, 160]


def test_stale_read_cannot_lower_price(engine, session, product):
    # this session read the product at 100 before a competing bid landed
    assert product.price == 100.0
    with Session(engine) as other:
        place_bid(other, product.id, 160, 'dave')

    with pytest.raises(BidRejected) as exc:
        place_bid(session, product.id, 150, 'carol')

    assert exc.value.code == BID_AMOUNT_TOO_LOW
    assert current_price(engine, product.id) == 160
    assert [b.amount for b in bids_for(session, product.id)] == [160]


def test_status_change_after_read_rejects_bid(engine, session, product):
    with Session(engine) as other:
        stored = other.get(Product, product.id)
        stored.status = 'sold'
        other.add(stored)
        other.commit()

    with pytest.raises(BidRejected) as exc:
        place_bid(session, product.id, 150, 'carol')

    assert exc.value.code == PRODUCT_NOT_FOUND_OR_NOT_ACTIVE
    assert current_price(engine, product.id) == 100.0


def test_concurrent_bids_serialize_on_the_row(engine, product):
    barrier = threading.Barrier(2)
    outcomes = {}

    def bid(amount, name):
        with Session(engine) as own:
            own.get(Product, product.id)
            barrier.wait()
            try:
                place_bid(own, product.id, amount, name)
                outcomes[amount] = 'accepted'
            except BidRejected as e:
                outcomes[amount] = e.code

    threads = [threading.Thread(target=bid, args=(150, 'carol')),
               threading.Thread(target=bid, args=(160, 'dave'))]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes[160] == 'accepted'
    assert outcomes[150] in ('accepted', BID_AMOUNT_TOO_LOW)
    assert current_price(engine, product.id) == 160

    with Session(engine) as other:
        recorded = [b.amount for b in other.exec(
            select(Bid).where(Bid.product_id == product.id).order_by(Bid.id)).all()]
    accepted = sorted(a for a, outcome in outcomes.items() if outcome == 'accepted')
    # every recorded bid raised the price over the one before it
    assert recorded == accepted
