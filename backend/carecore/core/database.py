from pathlib import Path

from fastapi import Request
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine, Session


def build_engine(database_url: str) -> Engine:
    connect_args = {}
    kwargs = {}
    if database_url.startswith("sqlite"):
        # check_same_thread=False is needed only for SQLite (the audit worker writes from a thread)
        connect_args = {"check_same_thread": False}
        if ":memory:" in database_url or database_url == "sqlite://":
            kwargs["poolclass"] = StaticPool
        else:
            Path(make_url(database_url).database).parent.mkdir(parents=True, exist_ok=True)
    return create_engine(database_url, connect_args=connect_args, **kwargs)


def create_db_and_tables(engine: Engine):
    SQLModel.metadata.create_all(engine)


def get_session(request: Request):
    with Session(request.app.state.engine) as session:
        yield session
