# videogen/db.py
# Database engine and table creation

from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine


def make_engine(database_url: str) -> Engine:
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
    return create_engine(database_url, echo=False, connect_args=connect_args)

def init_db(engine: Engine) -> None:
    # tables have to be registered on the metadata before create_all
    from . import models  # noqa: F401

    SQLModel.metadata.create_all(engine)
