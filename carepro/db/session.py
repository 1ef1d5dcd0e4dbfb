"""
Database connection and session management.
"""
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError
from sqlmodel import create_engine, SQLModel, Session
import structlog

from carepro.core.exceptions import ConflictError, PersistenceConflictError
from carepro.core.settings import settings

logger = structlog.get_logger(__name__)

_connect_args = {"check_same_thread": False} if settings.database_url.startswith("sqlite") else {}

# Create database engine
engine = create_engine(
    settings.database_url,
    echo=False,
    pool_pre_ping=True,  # Verify connections before use
    pool_recycle=300,  # Recycle connections every 5 minutes
    connect_args=_connect_args,
)


def create_db_and_tables():
    """Create database tables."""
    # Import models so they register on the metadata
    from carepro.db import models  # noqa: F401
    SQLModel.metadata.create_all(engine)


def get_session():
    """Dependency to get database session."""
    with Session(engine) as session:
        yield session


def commit_or_conflict(session: Session, resource: str, identifier: str = "",
                       duplicate_message: str = None):
    """
    Commit the session, translating concurrency failures.

    A stale versioned write becomes PersistenceConflictError; a unique
    constraint violation becomes ConflictError. The session is rolled back
    in both cases so nothing is partially applied.
    """
    try:
        session.commit()
    except StaleDataError:
        session.rollback()
        logger.warning("Stale write rejected", resource=resource, identifier=identifier)
        raise PersistenceConflictError(resource, identifier)
    except IntegrityError as e:
        session.rollback()
        logger.warning("Integrity violation", resource=resource, identifier=identifier, error=str(e.orig))
        raise ConflictError(duplicate_message or f"{resource} conflicts with an existing record")
