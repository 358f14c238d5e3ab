import datetime
from typing import Any, List, Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import SQLModel, Field, Relationship

ACTIVE = 'active'
SOLD = 'sold'
EXPIRED = 'expired'
PRODUCT_STATUSES = (ACTIVE, SOLD, EXPIRED)

PAYMENT_TYPES = ('bid', 'direct_buy')
ACCOUNT_TYPES = ('buyer', 'seller', 'both')


def now():
    return datetime.datetime.now()


class Category(SQLModel, table=True):
    __tablename__ = 'categories'

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    slug: str = Field(index=True, unique=True)
    description: Optional[str] = None
    created_at: datetime.datetime = Field(default_factory=now)

    products: List['Product'] = Relationship(back_populates='category')


class Seller(SQLModel, table=True):
    __tablename__ = 'sellers'

    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True, unique=True)
    email: str = Field(unique=True)
    rating: float = 0
    items_sold: int = 0
    avatar_url: Optional[str] = None
    joined_date: datetime.datetime = Field(default_factory=now)
    created_at: datetime.datetime = Field(default_factory=now)

    products: List['Product'] = Relationship(back_populates='seller')


class Buyer(SQLModel, table=True):
    __tablename__ = 'buyers'

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    email: str = Field(unique=True)
    created_at: datetime.datetime = Field(default_factory=now)


class Product(SQLModel, table=True):
    __tablename__ = 'products'

    id: Optional[int] = Field(default=None, primary_key=True)
    category_id: Optional[int] = Field(default=None, foreign_key='categories.id')
    seller_id: Optional[int] = Field(default=None, foreign_key='sellers.id')
    title: str
    description: Optional[str] = None
    # ratchets upward only, through bidding.place_bid
    price: float
    buy_now_price: Optional[float] = None
    condition: str = 'new'
    shipping_cost: float = 0
    image_url: Optional[str] = None
    status: str = Field(default=ACTIVE, index=True)
    views: int = 0
    created_at: datetime.datetime = Field(default_factory=now)
    ends_at: Optional[datetime.datetime] = None

    category: Optional[Category] = Relationship(back_populates='products')
    seller: Optional[Seller] = Relationship(back_populates='products')
    bids: List['Bid'] = Relationship(back_populates='product')


class Bid(SQLModel, table=True):
    __tablename__ = 'bids'

    id: Optional[int] = Field(default=None, primary_key=True)
    product_id: int = Field(foreign_key='products.id', index=True)
    buyer_id: Optional[int] = Field(default=None, foreign_key='buyers.id')
    bidder_name: str
    amount: float
    created_at: datetime.datetime = Field(default_factory=now)

    product: Optional[Product] = Relationship(back_populates='bids')


class Watch(SQLModel, table=True):
    __tablename__ = 'watches'
    __table_args__ = (UniqueConstraint('product_id', 'watcher_name'),)

    id: Optional[int] = Field(default=None, primary_key=True)
    product_id: int = Field(foreign_key='products.id', index=True)
    watcher_name: str = Field(index=True)
    created_at: datetime.datetime = Field(default_factory=now)


class Payment(SQLModel, table=True):
    __tablename__ = 'payments'

    id: Optional[int] = Field(default=None, primary_key=True)
    buyer_id: int = Field(foreign_key='buyers.id', index=True)
    product_id: Optional[int] = Field(default=None, foreign_key='products.id')
    amount: float
    type: str
    executed_by: Optional[str] = None
    created_at: datetime.datetime = Field(default_factory=now)


class AccountBase(SQLModel):
    username: str = Field(index=True, unique=True)
    type: str
    buyer_id: Optional[int] = Field(default=None, foreign_key='buyers.id')
    seller_id: Optional[int] = Field(default=None, foreign_key='sellers.id')


class Account(AccountBase, table=True):
    __tablename__ = 'accounts'

    id: Optional[int] = Field(default=None, primary_key=True)
    password_hash: str
    created_at: datetime.datetime = Field(default_factory=now)


class AccountRead(AccountBase):
    id: int
    created_at: datetime.datetime


# Request bodies. Fields that carry their own error codes are typed loosely
# so the routes can report those codes instead of a generic 422.

class CategoryCreate(SQLModel):
    name: Optional[str] = None
    slug: Optional[str] = None
    description: Optional[str] = None


class SellerCreate(SQLModel):
    username: Optional[str] = None
    email: Optional[str] = None
    rating: float = 0
    items_sold: int = 0
    avatar_url: Optional[str] = None


class BuyerCreate(SQLModel):
    name: Optional[str] = None
    email: Optional[str] = None


class ProductCreate(SQLModel):
    title: Optional[str] = None
    description: Optional[str] = None
    price: Any = None
    buy_now_price: Optional[float] = None
    condition: str = 'new'
    shipping_cost: float = 0
    image_url: Optional[str] = None
    category_id: Optional[int] = None
    seller_id: Optional[int] = None
    ends_at: Optional[datetime.datetime] = None


class ProductStatusUpdate(SQLModel):
    status: Optional[str] = None


class BidCreate(SQLModel):
    product_id: Optional[int] = None
    amount: Any = None
    bidder_name: Optional[str] = None
    buyer_id: Optional[int] = None


class WatchCreate(SQLModel):
    product_id: Optional[int] = None
    watcher_name: Optional[str] = None


class PaymentCreate(SQLModel):
    buyer_id: Optional[int] = None
    product_id: Optional[int] = None
    amount: Any = None
    type: Optional[str] = None
    executed_by: Optional[str] = None


class AccountCreate(SQLModel):
    username: Optional[str] = None
    password: Optional[str] = None
    type: Optional[str] = None
    buyer_id: Optional[int] = None
    seller_id: Optional[int] = None
