import datetime
import logging
import random

from sqlmodel import Session, select

from bidding import place_bid
from database import create_db_and_tables, engine
from models import Category, Product, Seller

logger = logging.getLogger(__name__)

CATEGORIES = [
    ('Electronics', 'electronics'),
    ('Collectibles', 'collectibles'),
    ('Fashion', 'fashion'),
    ('Sports', 'sports'),
]
CONDITIONS = ['new', 'like_new', 'used', 'refurbished']


def create_seller(n):
    return Seller(username=f'seller{n}', email=f'seller{n}@example.com',
                  rating=round(random.uniform(90, 100), 1),
                  items_sold=random.randint(0, 500))


def create_product(categories, sellers):
    r = random.randint(1, 100)
    price = float(random.randint(5, 2000))
    return Product(title=f'Painting number {r}',
                   description=f'Description for painting number {r}',
                   price=price,
                   buy_now_price=round(price * 1.2, 2),
                   condition=random.choice(CONDITIONS),
                   category_id=random.choice(categories).id,
                   seller_id=random.choice(sellers).id,
                   ends_at=datetime.datetime.now()
                   + datetime.timedelta(days=random.randint(1, 10)))


def increment_for(price):
    if price >= 500:
        return 50 if price > 1000 else 30
    if price >= 100:
        return 15
    return 5


def create_bids(session, product, bidders):
    """Walk the price upward through the bid rule, like a real auction."""
    for _ in range(random.randint(2, 5)):
        amount = round(product.price + increment_for(product.price)
                       * random.uniform(1, 2), 2)
        place_bid(session, product.id, amount, random.choice(bidders))


def populate(bind=None, products=10):
    bind = bind or engine
    create_db_and_tables(bind)
    with Session(bind) as session:
        if session.exec(select(Product)).first():
            logger.info('Database already populated, skipping')
            return

        categories = [Category(name=name, slug=slug) for name, slug in CATEGORIES]
        sellers = [create_seller(n) for n in range(1, 4)]
        session.add_all(categories + sellers)
        session.commit()
        for obj in categories + sellers:
            session.refresh(obj)

        items = [create_product(categories, sellers) for _ in range(products)]
        session.add_all(items)
        session.commit()

        bidders = [f'Bidder {n}' for n in range(1, 6)]
        # about half of the products get a bid history
        for product in random.sample(items, k=max(1, len(items) // 2)):
            session.refresh(product)
            create_bids(session, product, bidders)
        logger.info('Populated %s products', len(items))


if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO)
    populate()
