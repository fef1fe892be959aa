"""
Optimistic Locking Infrastructure
Version-based compare-and-swap updates for wallets and payment orders
"""

import logging
import time
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Dict, Type

from sqlalchemy import update
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from models import Base
from utils.exceptions import LedgerConflictError

logger = logging.getLogger(__name__)


class OptimisticLockingError(LedgerConflictError):
    """Raised when a versioned update finds the row already modified"""

    def __init__(self, message: str, entity: str = None, entity_id: Any = None, expected_version: int = None):
        super().__init__(
            message,
            error_code="VERSION_CONFLICT",
            details={"entity": entity, "entity_id": entity_id, "expected_version": expected_version},
        )
        self.expected_version = expected_version


class OptimisticLockManager:
    """
    Manager for optimistic locking operations
    Issues UPDATE ... WHERE id = :id AND version = :expected and checks the rowcount
    """

    def __init__(self, session: Session):
        self.session = session

    def versioned_update(
        self,
        model_class: Type[Base],
        entity_id: Any,
        updates: Dict[str, Any],
        current_version: int,
    ) -> int:
        """
        Perform version-controlled update

        Args:
            model_class: SQLAlchemy model class with a version column
            entity_id: Primary key value
            updates: Dictionary of field updates
            current_version: Version observed when the row was read

        Returns:
            int: the new version

        Raises:
            OptimisticLockingError: If another writer bumped the version first
        """
        new_version = current_version + 1
        stmt = (
            update(model_class)
            .where(model_class.id == entity_id, model_class.version == current_version)
            .values(**updates, version=new_version, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )

        try:
            result = self.session.execute(stmt)
        except SQLAlchemyError as e:
            logger.error(f"❌ Database error during versioned update: {e}")
            raise

        if result.rowcount == 0:
            logger.warning(
                f"🔒 Optimistic lock conflict: {model_class.__name__} id={entity_id} "
                f"expected_version={current_version}"
            )
            raise OptimisticLockingError(
                f"Version conflict for {model_class.__name__} id={entity_id}. "
                f"Expected version {current_version} but entity was modified by another process.",
                entity=model_class.__name__,
                entity_id=entity_id,
                expected_version=current_version,
            )

        logger.debug(
            f"✅ Versioned update successful: {model_class.__name__} id={entity_id} "
            f"v{current_version} → v{new_version}"
        )
        return new_version


def _is_lock_timeout(error: OperationalError) -> bool:
    # SQLite reports writer contention as "database is locked"
    message = str(error.orig if error.orig is not None else error).lower()
    return "locked" in message or "deadlock" in message or "could not serialize" in message


def with_optimistic_locking(
    max_retries: int = 3,
    retry_delay: float = 0.1,
    backoff_factor: float = 2.0,
    max_delay: float = 1.0,
):
    """
    Decorator to retry a whole unit of work on version conflicts

    The wrapped function must open and close its own transaction so every
    attempt re-reads fresh state. Settings may be given as numbers or as
    attribute names resolved on the bound instance (first positional arg).

    Args:
        max_retries: Maximum number of retry attempts
        retry_delay: Initial delay between retries in seconds
        backoff_factor: Exponential backoff multiplier
        max_delay: Upper bound for a single delay
    """
    def _resolve(setting, args):
        if isinstance(setting, str):
            return getattr(args[0], setting)
        return setting

    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            retries = _resolve(max_retries, args)
            current_delay = _resolve(retry_delay, args)
            factor = _resolve(backoff_factor, args)
            ceiling = _resolve(max_delay, args)

            for attempt in range(retries + 1):
                try:
                    return func(*args, **kwargs)

                except (OptimisticLockingError, OperationalError) as e:
                    if isinstance(e, OperationalError) and not _is_lock_timeout(e):
                        raise

                    if attempt < retries:
                        logger.info(
                            f"🔄 Optimistic lock retry {attempt + 1}/{retries} "
                            f"for {func.__name__}: {e}"
                        )
                        time.sleep(current_delay)
                        current_delay = min(current_delay * factor, ceiling)
                        continue

                    logger.error(
                        f"❌ Optimistic lock failed after {retries} retries "
                        f"for {func.__name__}: {e}"
                    )
                    raise LedgerConflictError(
                        f"{func.__name__} could not be applied after {retries} retries",
                        details={"attempts": retries + 1},
                    ) from e

        return wrapper
    return decorator
