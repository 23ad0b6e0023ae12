# Order lifecycle state machine
#
# PENDING -> EMAIL_VERIFIED -> PAYMENT_PENDING -> PAYMENT_UPLOADED -> APPROVED -> COMPLETED
#                                                                 \-> REJECTED -> PAYMENT_UPLOADED
# FAILED is reachable from the pre-payment states.

import logging
from typing import Iterable, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from ..core.database import utcnow
from ..core.errors import InvalidStateError, NotFoundError, UnauthorizedError, ValidationError
from ..models.order import Order, OrderStatus
from ..models.user import Role

logger = logging.getLogger(__name__)

S = OrderStatus

TRANSITIONS = {
    S.PENDING: frozenset({S.EMAIL_VERIFIED, S.FAILED}),
    S.EMAIL_VERIFIED: frozenset({S.PAYMENT_PENDING, S.PAYMENT_UPLOADED, S.FAILED}),
    S.PAYMENT_PENDING: frozenset({S.PAYMENT_UPLOADED, S.FAILED}),
    S.PAYMENT_UPLOADED: frozenset({S.APPROVED, S.REJECTED}),
    S.APPROVED: frozenset({S.COMPLETED}),
    S.COMPLETED: frozenset(),
    S.REJECTED: frozenset({S.PAYMENT_UPLOADED}),
    S.FAILED: frozenset(),
}

# Transitions only an administrator may perform
ADMIN_TARGETS = frozenset({S.APPROVED, S.REJECTED})

# Statuses that entitle the buyer to download the purchased bundles
ENTITLED_STATUSES = frozenset({S.APPROVED, S.COMPLETED})

STATUS_GUIDANCE = {
    S.PENDING: "Your order is pending email verification.",
    S.EMAIL_VERIFIED: "Your order is verified but payment is pending.",
    S.PAYMENT_PENDING: "Please upload your payment screenshot.",
    S.PAYMENT_UPLOADED: "Your payment is under review by our team.",
    S.REJECTED: "Your payment was rejected. Please contact support.",
    S.FAILED: "Your order failed. Please contact support.",
}


def status_guidance(status: OrderStatus) -> str:
    return STATUS_GUIDANCE.get(status, f"Your order status is {status.value}.")


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in TRANSITIONS[current]


def sources_for(target: OrderStatus) -> frozenset:
    return frozenset(s for s, targets in TRANSITIONS.items() if target in targets)


def transition(
    db: Session,
    order_id: str,
    target: OrderStatus,
    actor_role: Optional[Role] = None,
    expected: Optional[Iterable[OrderStatus]] = None,
    error_message: Optional[str] = None,
    **fields,
) -> Order:
    """Move an order to ``target`` with a compare-and-set update.

    ``expected`` narrows the allowed source statuses; it defaults to every
    status with a legal edge to ``target``. Including ``target`` itself allows
    an in-place update of ``fields`` without a status change. The caller owns
    the transaction.
    """
    if target in ADMIN_TARGETS and actor_role != Role.ADMIN:
        raise UnauthorizedError("Only administrators can approve or reject orders")

    legal = sources_for(target)
    if expected is None:
        sources = legal
    else:
        sources = frozenset(expected)
        illegal = sources - legal - {target}
        if illegal:
            raise ValueError(f"No transition from {sorted(s.value for s in illegal)} to {target.value}")

    result = db.execute(
        update(Order)
        .where(Order.id == order_id, Order.status.in_(list(sources)))
        .values(status=target, updated_at=utcnow(), **fields)
        .execution_options(synchronize_session=False)
    )
    order = db.get(Order, order_id, populate_existing=True)
    if result.rowcount == 0:
        if order is None:
            raise NotFoundError("Order not found")
        raise InvalidStateError(
            error_message or f"Order cannot move from {order.status.value} to {target.value}",
            orderStatus=order.status.value,
        )

    logger.info("Order %s -> %s", order_id, target.value)
    return order


def approve(db: Session, order_id: str, admin_id: str, actor_role: Role, notes: Optional[str] = None) -> Order:
    return transition(
        db,
        order_id,
        S.APPROVED,
        actor_role=actor_role,
        expected=[S.PAYMENT_UPLOADED],
        error_message="Order cannot be approved in current status",
        approved_at=utcnow(),
        approved_by=admin_id,
        admin_notes=notes,
    )


def reject(db: Session, order_id: str, admin_id: str, actor_role: Role, reason: str) -> Order:
    if actor_role != Role.ADMIN:
        raise UnauthorizedError("Only administrators can approve or reject orders")
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("Rejection reason is required")
    order = transition(
        db,
        order_id,
        S.REJECTED,
        actor_role=actor_role,
        expected=[S.PAYMENT_UPLOADED],
        error_message="Order cannot be rejected in current status",
        admin_notes=reason,
    )
    logger.info("Order %s rejected by %s", order_id, admin_id)
    return order
