"""
Bid acceptance and the price ratchet.

A bid is accepted only when it strictly exceeds the product's current price.
Acceptance writes the bid and raises the product price in one transaction.
The price write is a compare-and-set on the row, so a bid that was checked
against a stale price can never overwrite a higher one.
"""
import datetime
import logging
import math
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from errors import ApiError
from models import ACTIVE, Bid, Buyer, Product

logger = logging.getLogger(__name__)

PRODUCT_NOT_FOUND_OR_NOT_ACTIVE = 'PRODUCT_NOT_FOUND_OR_NOT_ACTIVE'
INVALID_AMOUNT = 'INVALID_AMOUNT'
BID_AMOUNT_TOO_LOW = 'BID_AMOUNT_TOO_LOW'
INVALID_BIDDER = 'INVALID_BIDDER'
BUYER_NOT_FOUND = 'BUYER_NOT_FOUND'


class BidRejected(ApiError):
    pass


def _not_active(product_id):
    return BidRejected(f'Product {product_id} not found or not active',
                       PRODUCT_NOT_FOUND_OR_NOT_ACTIVE)


def _too_low(amount, price):
    return BidRejected(f'Bid {amount} must be higher than current price {price}',
                       BID_AMOUNT_TOO_LOW)


def is_valid_amount(amount) -> bool:
    # bool is an int subclass; JSON true must not count as 1
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        return False
    try:
        value = float(amount)
    except OverflowError:
        return False
    return math.isfinite(value) and value > 0


def place_bid(session: Session, product_id: Optional[int], amount,
              bidder_name: Optional[str], buyer_id: Optional[int] = None) -> Bid:
    """Accept a bid on an active product and raise its price to the bid.

    Raises BidRejected when the product is missing or not active, when the
    amount is not a positive number, or when it does not exceed the current
    price. Nothing is written in any of those cases.
    """
    product = session.get(Product, product_id) if product_id is not None else None
    if not product or product.status != ACTIVE:
        raise _not_active(product_id)
    if not is_valid_amount(amount):
        raise BidRejected('Amount must be a number greater than 0', INVALID_AMOUNT)
    if not amount > product.price:
        raise _too_low(amount, product.price)

    name = (bidder_name or '').strip()
    if buyer_id is not None:
        if not session.get(Buyer, buyer_id):
            raise BidRejected(f'Buyer {buyer_id} not found', BUYER_NOT_FOUND)
        name = name or f'Bidder {buyer_id}'
    if not name:
        raise BidRejected('Bidder name is required', INVALID_BIDDER)

    amount = float(amount)
    try:
        ratchet = (
            update(Product)
            .where(Product.id == product_id,
                   Product.status == ACTIVE,
                   Product.price < amount)
            .values(price=amount)
            .execution_options(synchronize_session=False)
        )
        if session.execute(ratchet).rowcount != 1:
            session.rollback()
            # lost the race: re-read to report why
            session.refresh(product)
            if product.status != ACTIVE:
                raise _not_active(product_id)
            raise _too_low(amount, product.price)

        bid = Bid(product_id=product_id, buyer_id=buyer_id, bidder_name=name,
                  amount=amount, created_at=datetime.datetime.now())
        session.add(bid)
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        raise

    session.refresh(bid)
    session.refresh(product)
    logger.info('Bid %s accepted: product %s now at %s (%s)',
                bid.id, product_id, amount, name)
    return bid
