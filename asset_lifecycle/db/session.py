import os

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def create_asset_engine(url: str, **kwargs) -> Engine:
    if url.startswith("sqlite"):
        # The daily reset scheduler opens sessions from its own thread.
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True, future=True, **kwargs)


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )


ASSET_LIFECYCLE_DB_URL = _require_env("ASSET_LIFECYCLE_DB_URL")

engine_asset = create_asset_engine(ASSET_LIFECYCLE_DB_URL)

SessionLocalAsset = create_session_factory(engine_asset)
