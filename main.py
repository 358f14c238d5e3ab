import hashlib
import logging
import secrets
from contextlib import asynccontextmanager
from typing import Dict, List, Optional

import uvicorn
from fastapi import Depends, FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy import asc, desc, or_, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, col, select
from starlette.concurrency import run_in_threadpool
from starlette.middleware.cors import CORSMiddleware
from starlette.status import (HTTP_200_OK, HTTP_201_CREATED,
                              HTTP_400_BAD_REQUEST, HTTP_404_NOT_FOUND,
                              HTTP_500_INTERNAL_SERVER_ERROR)
from starlette.websockets import WebSocket, WebSocketDisconnect

import config
from bidding import BidRejected, is_valid_amount, place_bid
from database import create_db_and_tables, get_session
from errors import ApiError
from models import (ACCOUNT_TYPES, ACTIVE, PAYMENT_TYPES, PRODUCT_STATUSES,
                    Account, AccountCreate, AccountRead, Bid, BidCreate, Buyer,
                    BuyerCreate, Category, CategoryCreate, Payment,
                    PaymentCreate, Product, ProductCreate, ProductStatusUpdate,
                    Seller, SellerCreate, Watch, WatchCreate)

logging.basicConfig(level=config.LOG_LEVEL,
                    format='%(asctime)s %(levelname)s %(name)s: %(message)s')
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    create_db_and_tables()
    yield


app = FastAPI(title='Marketplace Auction API', lifespan=lifespan)

app.add_middleware(CORSMiddleware,
                   allow_origins=config.CORS_ORIGINS,
                   allow_methods=['*'],
                   allow_headers=['*']
                   )


@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError):
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = errors[0].get('msg', 'Invalid request') if errors else 'Invalid request'
    return JSONResponse({'error': message, 'code': 'INVALID_PARAMETER'},
                        status_code=HTTP_400_BAD_REQUEST)


@app.exception_handler(SQLAlchemyError)
async def storage_error_handler(request: Request, exc: SQLAlchemyError):
    logger.exception('Storage failure on %s %s', request.method, request.url.path)
    return JSONResponse({'error': 'Internal server error', 'code': 'INTERNAL_ERROR'},
                        status_code=HTTP_500_INTERNAL_SERVER_ERROR)


def not_found(what: str, code: str = 'NOT_FOUND'):
    return ApiError(f'{what} not found', code, HTTP_404_NOT_FOUND)


def page(limit: int = Query(config.LIST_LIMIT_DEFAULT, ge=1),
         offset: int = Query(0, ge=0)):
    return min(limit, config.LIST_LIMIT_MAX), offset


def clean(value: Optional[str]) -> str:
    return (value or '').strip()


def in_use(session: Session, *queries) -> bool:
    return any(session.exec(query).first() for query in queries)


def save(session: Session, obj):
    session.add(obj)
    session.commit()
    session.refresh(obj)
    return obj


class AuctionConnectionManager:
    def __init__(self):
        self.auction_connections: Dict[int, List[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, product_id: int,
                      session: Session) -> bool:
        await websocket.accept()
        product = session.get(Product, product_id)
        if not product or product.status != ACTIVE:
            await self.send_personal_message(websocket, json_data={
                'error': f'Product {product_id} not found or not active',
                'code': 'PRODUCT_NOT_FOUND_OR_NOT_ACTIVE'})
            await websocket.close()
            return False

        await self.send_personal_message(websocket, json_data={
            'message': f'Bidding on {product.title} is open',
            'new_price': product.price})
        self.auction_connections.setdefault(product_id, []).append(websocket)
        return True

    def disconnect(self, websocket: WebSocket, product_id: int):
        connections = self.auction_connections.get(product_id, [])
        if websocket in connections:
            connections.remove(websocket)
        if not connections:
            self.auction_connections.pop(product_id, None)

    async def send_personal_message(self, websocket: WebSocket, json_data: dict):
        await websocket.send_json(json_data)

    async def broadcast(self, product_id: int, json_data: dict):
        for connection in list(self.auction_connections.get(product_id, [])):
            try:
                await connection.send_json(json_data)
            except (WebSocketDisconnect, RuntimeError):
                logger.info('Dropping dead connection on product %s', product_id)
                self.disconnect(connection, product_id)

    async def announce_bid(self, bid: Bid):
        await self.broadcast(bid.product_id, {
            'message': f'{bid.bidder_name} has bid {bid.amount}!',
            'new_price': bid.amount,
            'bid': jsonable_encoder(bid),
        })


manager = AuctionConnectionManager()


@app.get('/', status_code=HTTP_200_OK)
def read_root():
    return {'message': 'Marketplace Auction API is running'}


@app.get('/health', status_code=HTTP_200_OK)
def health(session: Session = Depends(get_session)):
    status = {'backend': 'ok', 'database': 'ok'}
    try:
        session.execute(text('SELECT 1'))
    except SQLAlchemyError as e:
        logger.error('Database unreachable: %s', e)
        status['database'] = 'unavailable'
    return status


# ---- categories ----

@app.get('/categories')
def list_categories(paging=Depends(page), session: Session = Depends(get_session)):
    limit, offset = paging
    return session.exec(select(Category).order_by(Category.name)
                        .offset(offset).limit(limit)).all()


@app.get('/categories/{category_id}')
def get_category(category_id: int, session: Session = Depends(get_session)):
    category = session.get(Category, category_id)
    if not category:
        raise not_found('Category')
    return category


@app.post('/categories', status_code=HTTP_201_CREATED)
def create_category(payload: CategoryCreate, session: Session = Depends(get_session)):
    name, slug = clean(payload.name), clean(payload.slug).lower()
    if not name:
        raise ApiError('Name is required', 'MISSING_NAME')
    if not slug:
        raise ApiError('Slug is required', 'MISSING_SLUG')
    if session.exec(select(Category).where(Category.slug == slug)).first():
        raise ApiError('Slug already exists', 'DUPLICATE_SLUG')

    category = Category(name=name, slug=slug,
                        description=clean(payload.description) or None)
    session.add(category)
    session.commit()
    session.refresh(category)
    return category


@app.put('/categories/{category_id}')
def update_category(category_id: int, payload: CategoryCreate,
                    session: Session = Depends(get_session)):
    category = session.get(Category, category_id)
    if not category:
        raise not_found('Category', 'CATEGORY_NOT_FOUND')
    changes = payload.model_dump(exclude_unset=True)

    if 'name' in changes:
        name = clean(changes['name'])
        if not name:
            raise ApiError('Name cannot be empty', 'INVALID_NAME')
        category.name = name
    if 'slug' in changes:
        slug = clean(changes['slug']).lower()
        if not slug:
            raise ApiError('Slug cannot be empty', 'INVALID_SLUG')
        if session.exec(select(Category).where(Category.slug == slug,
                                               Category.id != category_id)).first():
            raise ApiError('Slug already exists', 'DUPLICATE_SLUG')
        category.slug = slug
    if 'description' in changes:
        category.description = clean(changes['description']) or None
    return save(session, category)


@app.delete('/categories/{category_id}')
def delete_category(category_id: int, session: Session = Depends(get_session)):
    category = session.get(Category, category_id)
    if not category:
        raise not_found('Category', 'CATEGORY_NOT_FOUND')
    if in_use(session, select(Product).where(Product.category_id == category_id)):
        raise ApiError('Category still has products', 'CATEGORY_IN_USE')
    session.delete(category)
    session.commit()
    return {'message': 'Category deleted successfully', 'id': category_id}


# ---- sellers & buyers ----

def check_email(email: str):
    if not email:
        raise ApiError('Email is required', 'MISSING_EMAIL')
    if '@' not in email:
        raise ApiError('Invalid email format', 'INVALID_EMAIL')


@app.get('/sellers')
def list_sellers(search: Optional[str] = None, paging=Depends(page),
                 session: Session = Depends(get_session)):
    limit, offset = paging
    query = select(Seller)
    if search:
        query = query.where(or_(col(Seller.username).contains(search),
                                col(Seller.email).contains(search)))
    return session.exec(query.order_by(Seller.id).offset(offset).limit(limit)).all()


@app.get('/sellers/{seller_id}')
def get_seller(seller_id: int, session: Session = Depends(get_session)):
    seller = session.get(Seller, seller_id)
    if not seller:
        raise not_found('Seller')
    return seller


@app.post('/sellers', status_code=HTTP_201_CREATED)
def create_seller(payload: SellerCreate, session: Session = Depends(get_session)):
    username, email = clean(payload.username), clean(payload.email).lower()
    if not username:
        raise ApiError('Username is required', 'MISSING_USERNAME')
    check_email(email)
    if session.exec(select(Seller).where(Seller.username == username)).first():
        raise ApiError('Username already exists', 'DUPLICATE_USERNAME')
    if session.exec(select(Seller).where(Seller.email == email)).first():
        raise ApiError('Email already exists', 'DUPLICATE_EMAIL')

    seller = Seller(username=username, email=email, rating=payload.rating,
                    items_sold=payload.items_sold,
                    avatar_url=clean(payload.avatar_url) or None)
    session.add(seller)
    session.commit()
    session.refresh(seller)
    return seller


@app.put('/sellers/{seller_id}')
def update_seller(seller_id: int, payload: SellerCreate,
                  session: Session = Depends(get_session)):
    seller = session.get(Seller, seller_id)
    if not seller:
        raise not_found('Seller')
    changes = payload.model_dump(exclude_unset=True)

    if 'username' in changes:
        username = clean(changes['username'])
        if not username:
            raise ApiError('Username cannot be empty', 'INVALID_USERNAME')
        if session.exec(select(Seller).where(Seller.username == username,
                                             Seller.id != seller_id)).first():
            raise ApiError('Username already exists', 'DUPLICATE_USERNAME')
        seller.username = username
    if 'email' in changes:
        email = clean(changes['email']).lower()
        check_email(email)
        if session.exec(select(Seller).where(Seller.email == email,
                                             Seller.id != seller_id)).first():
            raise ApiError('Email already exists', 'DUPLICATE_EMAIL')
        seller.email = email
    if 'rating' in changes:
        if not 0 <= changes['rating'] <= 100:
            raise ApiError('Rating must be between 0 and 100', 'INVALID_RATING')
        seller.rating = changes['rating']
    if 'items_sold' in changes:
        seller.items_sold = changes['items_sold']
    if 'avatar_url' in changes:
        seller.avatar_url = clean(changes['avatar_url']) or None
    return save(session, seller)


@app.delete('/sellers/{seller_id}')
def delete_seller(seller_id: int, session: Session = Depends(get_session)):
    seller = session.get(Seller, seller_id)
    if not seller:
        raise not_found('Seller')
    if in_use(session, select(Product).where(Product.seller_id == seller_id),
              select(Account).where(Account.seller_id == seller_id)):
        raise ApiError('Seller still has products or accounts', 'SELLER_IN_USE')
    deleted = jsonable_encoder(seller)
    session.delete(seller)
    session.commit()
    return {'message': 'Seller deleted successfully', 'seller': deleted}


@app.get('/buyers')
def list_buyers(search: Optional[str] = None, paging=Depends(page),
                session: Session = Depends(get_session)):
    limit, offset = paging
    query = select(Buyer)
    if search:
        query = query.where(or_(col(Buyer.name).contains(search),
                                col(Buyer.email).contains(search)))
    return session.exec(query.order_by(Buyer.id).offset(offset).limit(limit)).all()


@app.get('/buyers/{buyer_id}')
def get_buyer(buyer_id: int, session: Session = Depends(get_session)):
    buyer = session.get(Buyer, buyer_id)
    if not buyer:
        raise not_found('Buyer')
    return buyer


@app.post('/buyers', status_code=HTTP_201_CREATED)
def create_buyer(payload: BuyerCreate, session: Session = Depends(get_session)):
    name, email = clean(payload.name), clean(payload.email).lower()
    if not name:
        raise ApiError('Name is required', 'MISSING_NAME')
    check_email(email)
    if session.exec(select(Buyer).where(Buyer.email == email)).first():
        raise ApiError('Email already exists', 'DUPLICATE_EMAIL')

    buyer = Buyer(name=name, email=email)
    session.add(buyer)
    session.commit()
    session.refresh(buyer)
    return buyer


@app.put('/buyers/{buyer_id}')
def update_buyer(buyer_id: int, payload: BuyerCreate,
                 session: Session = Depends(get_session)):
    buyer = session.get(Buyer, buyer_id)
    if not buyer:
        raise not_found('Buyer')
    changes = payload.model_dump(exclude_unset=True)

    if 'name' in changes:
        name = clean(changes['name'])
        if not name:
            raise ApiError('Name cannot be empty', 'INVALID_NAME')
        buyer.name = name
    if 'email' in changes:
        email = clean(changes['email']).lower()
        check_email(email)
        if session.exec(select(Buyer).where(Buyer.email == email,
                                            Buyer.id != buyer_id)).first():
            raise ApiError('Email already exists', 'DUPLICATE_EMAIL')
        buyer.email = email
    return save(session, buyer)


@app.delete('/buyers/{buyer_id}')
def delete_buyer(buyer_id: int, session: Session = Depends(get_session)):
    buyer = session.get(Buyer, buyer_id)
    if not buyer:
        raise not_found('Buyer')
    if in_use(session, select(Bid).where(Bid.buyer_id == buyer_id),
              select(Payment).where(Payment.buyer_id == buyer_id),
              select(Account).where(Account.buyer_id == buyer_id)):
        raise ApiError('Buyer still has bids, payments or accounts', 'BUYER_IN_USE')
    deleted = jsonable_encoder(buyer)
    session.delete(buyer)
    session.commit()
    return {'message': 'Buyer deleted successfully', 'buyer': deleted}


# ---- products ----

SORT_COLUMNS = {'id': Product.id, 'price': Product.price, 'ends_at': Product.ends_at}


@app.get('/products')
def list_products(search: Optional[str] = None,
                  seller_id: Optional[int] = None,
                  category_id: Optional[int] = None,
                  status: Optional[str] = None,
                  min_price: Optional[float] = None,
                  max_price: Optional[float] = None,
                  sort: str = 'id',
                  order: str = 'desc',
                  paging=Depends(page),
                  session: Session = Depends(get_session)):
    limit, offset = paging
    query = select(Product)
    if search:
        query = query.where(or_(col(Product.title).contains(search),
                                col(Product.description).contains(search)))
    if seller_id is not None:
        query = query.where(Product.seller_id == seller_id)
    if category_id is not None:
        query = query.where(Product.category_id == category_id)
    if status:
        query = query.where(Product.status == status)
    if min_price is not None:
        query = query.where(Product.price >= min_price)
    if max_price is not None:
        query = query.where(Product.price <= max_price)

    column = SORT_COLUMNS.get(sort, Product.id)
    direction = asc if order == 'asc' else desc
    return session.exec(query.order_by(direction(column))
                        .offset(offset).limit(limit)).all()


@app.get('/products/{product_id}')
def get_product(product_id: int, session: Session = Depends(get_session)):
    product = session.get(Product, product_id)
    if not product:
        raise not_found('Product')

    product.views += 1
    session.add(product)
    session.commit()
    session.refresh(product)

    bids = session.exec(select(Bid).where(Bid.product_id == product_id)
                        .order_by(desc(Bid.amount))).all()
    return {'product': product,
            'bids': bids,
            'seller': product.seller,
            'category': product.category}


@app.post('/products', status_code=HTTP_201_CREATED)
def create_product(payload: ProductCreate, session: Session = Depends(get_session)):
    title = clean(payload.title)
    if not title:
        raise ApiError('Title is required', 'MISSING_TITLE')
    if not is_valid_amount(payload.price):
        raise ApiError('Price must be a number greater than 0', 'INVALID_PRICE')
    if payload.seller_id is not None and not session.get(Seller, payload.seller_id):
        raise ApiError('Seller not found', 'SELLER_NOT_FOUND')
    if payload.category_id is not None and not session.get(Category, payload.category_id):
        raise ApiError('Category not found', 'CATEGORY_NOT_FOUND')

    product = Product(title=title,
                      description=payload.description,
                      price=float(payload.price),
                      buy_now_price=payload.buy_now_price,
                      condition=clean(payload.condition) or 'new',
                      shipping_cost=payload.shipping_cost,
                      image_url=payload.image_url,
                      category_id=payload.category_id,
                      seller_id=payload.seller_id,
                      ends_at=payload.ends_at)
    session.add(product)
    session.commit()
    session.refresh(product)
    return product


@app.patch('/products/{product_id}')
def update_product_status(product_id: int, payload: ProductStatusUpdate,
                          session: Session = Depends(get_session)):
    product = session.get(Product, product_id)
    if not product:
        raise not_found('Product')
    status = clean(payload.status).lower()
    if status not in PRODUCT_STATUSES:
        raise ApiError(f'Status must be one of {", ".join(PRODUCT_STATUSES)}',
                       'INVALID_STATUS')

    logger.info('Product %s status %s -> %s', product_id, product.status, status)
    product.status = status
    session.add(product)
    session.commit()
    session.refresh(product)
    return product


# ---- bids ----

@app.get('/bids')
def list_bids(product_id: Optional[int] = None, buyer_id: Optional[int] = None,
              paging=Depends(page), session: Session = Depends(get_session)):
    limit, offset = paging
    query = select(Bid)
    if product_id is not None:
        query = query.where(Bid.product_id == product_id)
    if buyer_id is not None:
        query = query.where(Bid.buyer_id == buyer_id)
    return session.exec(query.order_by(desc(Bid.amount))
                        .offset(offset).limit(limit)).all()


@app.get('/bids/{bid_id}')
def get_bid(bid_id: int, session: Session = Depends(get_session)):
    bid = session.get(Bid, bid_id)
    if not bid:
        raise not_found('Bid')
    return bid


@app.post('/bids', status_code=HTTP_201_CREATED)
async def create_bid(payload: BidCreate, session: Session = Depends(get_session)):
    try:
        bid = await run_in_threadpool(place_bid, session, payload.product_id,
                                      payload.amount, payload.bidder_name,
                                      payload.buyer_id)
    except BidRejected as e:
        logger.info('Bid on product %s rejected: %s', payload.product_id, e.code)
        raise
    await manager.announce_bid(bid)
    return bid


@app.delete('/bids/{bid_id}')
def delete_bid(bid_id: int, session: Session = Depends(get_session)):
    bid = session.get(Bid, bid_id)
    if not bid:
        raise not_found('Bid')
    deleted = jsonable_encoder(bid)
    session.delete(bid)
    session.commit()
    logger.info('Bid %s deleted by administrator', bid_id)
    return {'message': 'Bid deleted successfully', 'bid': deleted}


# ---- watches ----

@app.get('/watches')
def list_watches(watcher_name: Optional[str] = None,
                 product_id: Optional[int] = None,
                 paging=Depends(page), session: Session = Depends(get_session)):
    if not watcher_name and product_id is None:
        raise ApiError('Either watcher_name or product_id parameter is required',
                       'MISSING_REQUIRED_PARAMETER')
    limit, offset = paging
    query = select(Watch)
    if watcher_name:
        query = query.where(Watch.watcher_name == watcher_name)
    if product_id is not None:
        query = query.where(Watch.product_id == product_id)
    return session.exec(query.order_by(Watch.id).offset(offset).limit(limit)).all()


@app.post('/watches', status_code=HTTP_201_CREATED)
def create_watch(payload: WatchCreate, session: Session = Depends(get_session)):
    if payload.product_id is None:
        raise ApiError('productId is required', 'MISSING_PRODUCT_ID')
    watcher_name = clean(payload.watcher_name)
    if not watcher_name:
        raise ApiError('watcherName must be non-empty', 'INVALID_WATCHER_NAME')
    if not session.get(Product, payload.product_id):
        raise ApiError('Product not found', 'PRODUCT_NOT_FOUND')
    existing = session.exec(select(Watch).where(
        Watch.product_id == payload.product_id,
        Watch.watcher_name == watcher_name)).first()
    if existing:
        raise ApiError('Already watching this product', 'DUPLICATE_WATCH')

    watch = Watch(product_id=payload.product_id, watcher_name=watcher_name)
    session.add(watch)
    try:
        session.commit()
    except IntegrityError:
        # a concurrent request inserted the same watch after our check
        session.rollback()
        raise ApiError('Already watching this product', 'DUPLICATE_WATCH')
    session.refresh(watch)
    return watch


@app.delete('/watches/{watch_id}')
def delete_watch(watch_id: int, session: Session = Depends(get_session)):
    watch = session.get(Watch, watch_id)
    if not watch:
        raise not_found('Watch', 'WATCH_NOT_FOUND')
    session.delete(watch)
    session.commit()
    return {'message': 'Watch removed successfully', 'id': watch_id}


# ---- payments ----

@app.get('/payments')
def list_payments(buyer_id: Optional[int] = None, type: Optional[str] = None,
                  paging=Depends(page), session: Session = Depends(get_session)):
    limit, offset = paging
    query = select(Payment)
    if buyer_id is not None:
        query = query.where(Payment.buyer_id == buyer_id)
    if type:
        query = query.where(Payment.type == type.strip())
    return session.exec(query.order_by(Payment.id).offset(offset).limit(limit)).all()


def check_payment(session: Session, changes: dict) -> dict:
    """Validate the payment fields present in changes, returning clean values."""
    values = {}
    if 'amount' in changes:
        if not is_valid_amount(changes['amount']):
            raise ApiError('Amount must be a number greater than 0', 'INVALID_AMOUNT')
        values['amount'] = float(changes['amount'])
    if 'type' in changes:
        values['type'] = clean(changes['type'])
        if values['type'] not in PAYMENT_TYPES:
            raise ApiError(f'Type must be one of {", ".join(PAYMENT_TYPES)}',
                           'INVALID_TYPE')
    if 'buyer_id' in changes:
        if changes['buyer_id'] is None or not session.get(Buyer, changes['buyer_id']):
            raise ApiError('Buyer not found', 'BUYER_NOT_FOUND')
        values['buyer_id'] = changes['buyer_id']
    if 'product_id' in changes:
        if changes['product_id'] is not None and \
                not session.get(Product, changes['product_id']):
            raise ApiError('Product not found', 'PRODUCT_NOT_FOUND')
        values['product_id'] = changes['product_id']
    if 'executed_by' in changes:
        values['executed_by'] = clean(changes['executed_by']) or None
    return values


@app.get('/payments/{payment_id}')
def get_payment(payment_id: int, session: Session = Depends(get_session)):
    payment = session.get(Payment, payment_id)
    if not payment:
        raise not_found('Payment')
    return payment


@app.post('/payments', status_code=HTTP_201_CREATED)
def create_payment(payload: PaymentCreate, session: Session = Depends(get_session)):
    # every field is checked on create, set or not
    values = check_payment(session, payload.model_dump())
    return save(session, Payment(**values))


@app.put('/payments/{payment_id}')
def update_payment(payment_id: int, payload: PaymentCreate,
                   session: Session = Depends(get_session)):
    payment = session.get(Payment, payment_id)
    if not payment:
        raise not_found('Payment')
    for key, value in check_payment(
            session, payload.model_dump(exclude_unset=True)).items():
        setattr(payment, key, value)
    return save(session, payment)


@app.delete('/payments/{payment_id}')
def delete_payment(payment_id: int, session: Session = Depends(get_session)):
    payment = session.get(Payment, payment_id)
    if not payment:
        raise not_found('Payment')
    deleted = jsonable_encoder(payment)
    session.delete(payment)
    session.commit()
    return {'message': 'Payment deleted successfully', 'payment': deleted}


# ---- accounts ----

def hash_password(password: str, salt: Optional[str] = None) -> str:
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac('sha256', password.encode(), bytes.fromhex(salt),
                                 100_000)
    return f'{salt}${digest.hex()}'


def check_account_links(session: Session, changes: dict):
    if changes.get('buyer_id') is not None and not session.get(Buyer, changes['buyer_id']):
        raise ApiError('Buyer not found', 'BUYER_NOT_FOUND')
    if changes.get('seller_id') is not None and \
            not session.get(Seller, changes['seller_id']):
        raise ApiError('Seller not found', 'SELLER_NOT_FOUND')


def check_account_type(account_type: str):
    if account_type not in ACCOUNT_TYPES:
        raise ApiError(f'Type must be one of {", ".join(ACCOUNT_TYPES)}',
                       'INVALID_TYPE')


@app.get('/accounts', response_model=List[AccountRead])
def list_accounts(search: Optional[str] = None, type: Optional[str] = None,
                  paging=Depends(page), session: Session = Depends(get_session)):
    limit, offset = paging
    query = select(Account)
    if search:
        query = query.where(col(Account.username).contains(search))
    if type:
        query = query.where(Account.type == type.strip())
    return session.exec(query.order_by(Account.id).offset(offset).limit(limit)).all()


@app.get('/accounts/{account_id}', response_model=AccountRead)
def get_account(account_id: int, session: Session = Depends(get_session)):
    account = session.get(Account, account_id)
    if not account:
        raise not_found('Account', 'ACCOUNT_NOT_FOUND')
    return account


@app.post('/accounts', response_model=AccountRead, status_code=HTTP_201_CREATED)
def create_account(payload: AccountCreate, session: Session = Depends(get_session)):
    username, password = clean(payload.username), clean(payload.password)
    account_type = clean(payload.type).lower()
    if not (username and password and account_type):
        raise ApiError('username, password and type are required',
                       'MISSING_REQUIRED_FIELDS')
    check_account_type(account_type)
    if session.exec(select(Account).where(Account.username == username)).first():
        raise ApiError('Username already exists', 'DUPLICATE_USERNAME')
    check_account_links(session, payload.model_dump())

    account = Account(username=username, password_hash=hash_password(password),
                      type=account_type, buyer_id=payload.buyer_id,
                      seller_id=payload.seller_id)
    session.add(account)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise ApiError('Username already exists', 'DUPLICATE_USERNAME')
    session.refresh(account)
    return account


@app.put('/accounts/{account_id}', response_model=AccountRead)
def update_account(account_id: int, payload: AccountCreate,
                   session: Session = Depends(get_session)):
    account = session.get(Account, account_id)
    if not account:
        raise not_found('Account', 'ACCOUNT_NOT_FOUND')
    changes = payload.model_dump(exclude_unset=True)

    if 'username' in changes:
        username = clean(changes['username'])
        if not username:
            raise ApiError('Username cannot be empty', 'EMPTY_USERNAME')
        if session.exec(select(Account).where(Account.username == username,
                                              Account.id != account_id)).first():
            raise ApiError('Username already exists', 'DUPLICATE_USERNAME')
        account.username = username
    if 'password' in changes:
        password = clean(changes['password'])
        if not password:
            raise ApiError('Password cannot be empty', 'EMPTY_PASSWORD')
        account.password_hash = hash_password(password)
    if 'type' in changes:
        account_type = clean(changes['type']).lower()
        check_account_type(account_type)
        account.type = account_type
    check_account_links(session, changes)
    for key in ('buyer_id', 'seller_id'):
        if key in changes:
            setattr(account, key, changes[key])
    return save(session, account)


@app.delete('/accounts/{account_id}')
def delete_account(account_id: int, session: Session = Depends(get_session)):
    account = session.get(Account, account_id)
    if not account:
        raise not_found('Account', 'ACCOUNT_NOT_FOUND')
    deleted = jsonable_encoder(AccountRead.model_validate(account))
    session.delete(account)
    session.commit()
    return {'message': 'Account deleted successfully', 'account': deleted}


# ---- live bid feed ----

def message_problem(data) -> Optional[str]:
    if not isinstance(data, dict) or 'bid' not in data:
        return 'Message must carry a bid'
    if not isinstance(data.get('bidder_name', ''), (str, type(None))):
        return 'bidder_name must be a string'
    buyer_id = data.get('buyer_id')
    if buyer_id is not None and (isinstance(buyer_id, bool) or
                                 not isinstance(buyer_id, int)):
        return 'buyer_id must be an integer'
    return None


@app.websocket('/products/{product_id}/ws')
async def auction(websocket: WebSocket, product_id: int,
                  session: Session = Depends(get_session)):
    if not await manager.connect(websocket, product_id, session):
        return
    try:
        while True:
            try:
                data = await websocket.receive_json()
            except ValueError:
                await manager.send_personal_message(websocket, json_data={
                    'error': 'Message must be JSON', 'code': 'INVALID_MESSAGE'})
                continue
            problem = message_problem(data)
            if problem:
                await manager.send_personal_message(websocket, json_data={
                    'error': problem, 'code': 'INVALID_MESSAGE'})
                continue

            # another request may have moved the price since the last message
            session.expire_all()
            try:
                bid = await run_in_threadpool(place_bid, session, product_id,
                                              data['bid'], data.get('bidder_name'),
                                              data.get('buyer_id'))
            except BidRejected as e:
                await manager.send_personal_message(websocket, json_data=e.to_dict())
                continue
            await manager.announce_bid(bid)

    except WebSocketDisconnect:
        logger.info('Bidder left product %s', product_id)
    finally:
        manager.disconnect(websocket, product_id)


if __name__ == "__main__":
    uvicorn.run(app, host=config.HOST, port=config.PORT)
