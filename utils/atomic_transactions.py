"""Atomic transaction utilities for payment, balance and withdrawal operations"""

import logging
import time
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from database import SessionLocal
from models import Payment, User, Withdrawal
from utils.exception_handler import NotFound

logger = logging.getLogger(__name__)


@contextmanager
def atomic_transaction(session: Optional[Session] = None) -> Generator[Session, None, None]:
    """
    Synchronous context manager for atomic database transactions with proper rollback.

    With no session, opens one, commits on success and rolls back on error; a
    connection error raised before any work was yielded is retried once.
    With a provided session, nested use defers the commit to the outermost block.
    """
    if session is None:
        max_retries = 1
        for attempt in range(max_retries + 1):
            new_session = SessionLocal()
            entered = False
            try:
                # Touch the connection before yielding so connection errors can be retried
                new_session.connection()
                entered = True
                yield new_session
                new_session.commit()
                logger.debug("Sync atomic transaction committed successfully")
                return
            except OperationalError as e:
                new_session.rollback()
                if not entered and attempt < max_retries:
                    logger.info(f"🔄 Retrying atomic transaction after connection error (attempt {attempt + 2}): {e}")
                    time.sleep(0.5)
                    continue
                logger.error(f"Sync transaction rolled back due to error: {e}")
                raise
            except Exception as e:
                new_session.rollback()
                logger.debug(f"Sync transaction rolled back: {type(e).__name__}: {e}")
                raise
            finally:
                new_session.close()
        return

    transaction_depth = getattr(session, "_atomic_transaction_depth", 0)
    try:
        setattr(session, "_atomic_transaction_depth", transaction_depth + 1)
        yield session
        if transaction_depth == 0:
            session.commit()
    except Exception as e:
        session.rollback()
        logger.debug(f"Sync transaction rolled back (depth: {transaction_depth + 1}): {e}")
        raise
    finally:
        current_depth = getattr(session, "_atomic_transaction_depth", 1)
        setattr(session, "_atomic_transaction_depth", max(0, current_depth - 1))


def locked_payment(session: Session, payment_id: int) -> Payment:
    """Load a payment with a row-level lock (SELECT ... FOR UPDATE)"""
    try:
        payment = (
            session.query(Payment)
            .filter(Payment.id == payment_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
    except SQLAlchemyError as e:
        logger.error(f"Database error locking payment {payment_id}: {e}")
        raise
    if payment is None:
        raise NotFound(f"Payment {payment_id} not found")
    return payment


def locked_withdrawal(session: Session, withdrawal_id: int) -> Withdrawal:
    """Load a withdrawal with a row-level lock"""
    withdrawal = (
        session.query(Withdrawal)
        .filter(Withdrawal.id == withdrawal_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if withdrawal is None:
        raise NotFound(f"Withdrawal {withdrawal_id} not found")
    return withdrawal


def locked_user(session: Session, user_id: int) -> User:
    """Load a user with a row-level lock"""
    user = (
        session.query(User)
        .filter(User.id == user_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if user is None:
        raise NotFound(f"User {user_id} not found")
    return user
