from sqlalchemy import create_engine
from sqlmodel import SQLModel, Session

import config


def make_engine(url: str):
    connect_args = {}
    if url.startswith('sqlite'):
        # FastAPI serves sync routes from a threadpool
        connect_args = {'check_same_thread': False}
    return create_engine(url, connect_args=connect_args)


engine = make_engine(config.DATABASE_URL)


def create_db_and_tables(bind=None):
    SQLModel.metadata.create_all(bind or engine)


def get_session():
    with Session(engine) as session:
        yield session
