from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base

from posqris import config


def make_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        # sessions cross FastAPI's threadpool
        return create_engine(url, connect_args={"check_same_thread": False})
    # payment rows are written from short requests; drop dead pooled connections
    return create_engine(url, pool_pre_ping=True)


engine = make_engine(config.database_url())

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
Base = declarative_base()
