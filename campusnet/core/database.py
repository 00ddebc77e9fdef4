import os
import uuid
import logging
from contextlib import contextmanager
from datetime import datetime, timezone

from dotenv import load_dotenv
from sqlalchemy import create_engine, event
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import declarative_base, sessionmaker, Session

from campusnet.core.errors import Conflict
from campusnet.utils.env_helper import env_bool

load_dotenv()
logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./campusnet.db")

Base = declarative_base()


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def pair_key(user_a: str, user_b: str) -> str:
    """Canonical, order independent key for an unordered user pair."""
    u1, u2 = sorted([str(user_a), str(user_b)])
    return f"{u1}|{u2}"


def make_engine(url: str = DATABASE_URL, echo: bool = None):
    if echo is None:
        echo = env_bool("DB_ECHO", default=False)

    connect_args = {}
    if url.startswith("sqlite"):
        # FastAPI runs sync routes in a threadpool
        connect_args["check_same_thread"] = False

    engine = create_engine(url, echo=echo, connect_args=connect_args, future=True)

    if engine.dialect.name == "sqlite":

        @event.listens_for(engine, "connect")
        def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


engine = make_engine()
SessionLocal = sessionmaker(bind=engine, expire_on_commit=True)


def init_db(bind=None):
    # Import the feature models so they register on Base.metadata
    from campusnet.connections import models as _connections  # noqa: F401
    from campusnet.chat import models as _chat  # noqa: F401
    from campusnet.groups import models as _groups  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
    logger.info("database_initialized")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def atomic(session: Session):
    """
    Run a block as one all-or-nothing unit.

    Commits when the block finishes, rolls back on any exception. Unique
    constraint violations raised by the backing store mean another request
    won a race, so they surface as ``Conflict``.
    """
    try:
        yield session
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        logger.warning(f"integrity_conflict error={exc.orig}")
        raise Conflict() from exc
    except Exception:
        session.rollback()
        raise


def dialect_insert(session: Session, model):
    """INSERT construct with ``on_conflict_do_nothing`` support for the bound dialect."""
    name = session.get_bind().dialect.name
    if name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise RuntimeError(f"Unsupported database dialect: {name}")
    return insert(model)
