"""Admin decisions on uploaded payments."""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from ..models.fulfillment_job import JobKind
from ..models.order import Order
from ..models.user import User
from . import fulfillment, order_state

logger = logging.getLogger(__name__)


@dataclass
class DecisionResult:
    order: Order
    job_id: int


def approve_order(db: Session, order_id: str, admin: User, notes: Optional[str] = None) -> DecisionResult:
    """Approve and queue the access email in one transaction.

    The email itself is sent by ``fulfillment.dispatch_job`` outside the
    request; the approval stands whatever happens to it.
    """
    try:
        order = order_state.approve(db, order_id, admin.id, admin.role, notes)
        job = fulfillment.enqueue(db, order.id, JobKind.ACCESS_EMAIL)
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info("[APPROVAL COMPLETE] Order %s approved by %s, access email queued (job %s)", order.id, admin.id, job.id)
    return DecisionResult(order=order, job_id=job.id)


def reject_order(db: Session, order_id: str, admin: User, reason: str) -> DecisionResult:
    try:
        order = order_state.reject(db, order_id, admin.id, admin.role, reason)
        job = fulfillment.enqueue(db, order.id, JobKind.REJECTION_EMAIL)
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info("Order %s rejected by %s, rejection email queued (job %s)", order.id, admin.id, job.id)
    return DecisionResult(order=order, job_id=job.id)
