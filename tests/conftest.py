import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session

from database import create_db_and_tables, get_session, make_engine
from main import app
from models import Buyer, Category, Product, Seller


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f'sqlite:///{tmp_path / "test.db"}')
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def client(engine):
    def get_test_session():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_session] = get_test_session
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def seller(session):
    seller = Seller(username='alice', email='alice@example.com')
    session.add(seller)
    session.commit()
    session.refresh(seller)
    return seller


@pytest.fixture
def buyer(session):
    buyer = Buyer(name='Bob', email='bob@example.com')
    session.add(buyer)
    session.commit()
    session.refresh(buyer)
    return buyer


@pytest.fixture
def category(session):
    category = Category(name='Art', slug='art')
    session.add(category)
    session.commit()
    session.refresh(category)
    return category


@pytest.fixture
def product(session, seller, category):
    product = Product(title='Painting number 7', price=100.0,
                      seller_id=seller.id, category_id=category.id)
    session.add(product)
    session.commit()
    session.refresh(product)
    return product
