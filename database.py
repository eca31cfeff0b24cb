import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from config import Settings

logger = logging.getLogger(__name__)

DATABASE_URL = Settings.DATABASE_URL

connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(DATABASE_URL, connect_args=connect_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def init_db() -> None:
    """Create all tables known to the declarative base."""
    import models  # noqa: F401  (registers the mapped classes)

    Base.metadata.create_all(bind=engine)
    logger.info("Database schema ready at %s", engine.url.render_as_string(hide_password=True))


def get_db():
    """
    Dependency yielding a SQLAlchemy session for one request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
