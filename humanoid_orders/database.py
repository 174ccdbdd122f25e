from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.orm.exc import StaleDataError
import structlog

from humanoid_orders.config import settings

logger = structlog.get_logger(component="database")

DATABASE_URL = settings.DATABASE_URL
if not DATABASE_URL:
    raise RuntimeError("DATABASE_URL is not set. Check your .env file.")

engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
)

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
Base = declarative_base()


def run_in_transaction(session_factory, work, retries: int = 3):
    """Run ``work(db)`` as one unit of work and commit it.

    A lost optimistic-lock race (``StaleDataError``) or a unique-key race
    (``IntegrityError``) rolls the whole unit back and runs it again on a
    fresh session, so ``work`` must re-read everything it depends on.
    """
    attempt = 0
    while True:
        attempt += 1
        db = session_factory()
        try:
            result = work(db)
            db.commit()
            return result
        except (StaleDataError, IntegrityError) as exc:
            db.rollback()
            if attempt >= retries:
                raise
            logger.info("transaction_retry", attempt=attempt, error=type(exc).__name__)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
