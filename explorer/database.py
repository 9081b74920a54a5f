"""SQLite-backed key-value store shared by the API routes."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterator

from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url
from sqlmodel import Session, SQLModel, create_engine

from . import config

logger = logging.getLogger(__name__)


def create_store_engine(url: str) -> Engine:
    """Engine for ``url``; file-backed SQLite databases get their directory created."""

    parsed = make_url(url)
    connect_args = {}
    if parsed.get_backend_name() == "sqlite":
        connect_args["check_same_thread"] = False
        if parsed.database and parsed.database != ":memory:":
            Path(parsed.database).expanduser().parent.mkdir(parents=True, exist_ok=True)
    return create_engine(url, echo=False, connect_args=connect_args)


engine = create_store_engine(config.database_url())


def init_db() -> None:
    from . import models  # noqa: F401 registers StoredValue

    SQLModel.metadata.create_all(engine)
    logger.info("Key-value store ready at %s", engine.url.render_as_string(hide_password=True))


def get_session() -> Iterator[Session]:
    with Session(engine) as session:
        yield session
