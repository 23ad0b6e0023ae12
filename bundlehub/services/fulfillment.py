"""
Post-decision emails for orders, backed by the fulfillment_jobs outbox.

The job row is written in the same transaction as the approval or rejection,
then dispatched outside the request. A failed send never touches the order
decision; the job stays PENDING and the sweeper retries it until it runs out
of attempts.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Dict, Optional

from sqlalchemy import and_, or_, update
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.database import utcnow
from ..core.email import build_access_email, build_order_receipt, build_rejection_email
from ..core.errors import InvalidStateError
from ..models.fulfillment_job import FulfillmentJob, JobKind, JobStatus
from ..models.order import Order, OrderStatus
from . import order_state

logger = logging.getLogger(__name__)


def enqueue(db: Session, order_id: str, kind: JobKind) -> FulfillmentJob:
    """Add a job to the caller's transaction. Does not commit."""
    job = FulfillmentJob(order_id=order_id, kind=kind, status=JobStatus.PENDING, attempts=0)
    db.add(job)
    db.flush()
    return job


def _claim(db: Session, job: FulfillmentJob) -> bool:
    result = db.execute(
        update(FulfillmentJob)
        .where(
            FulfillmentJob.id == job.id,
            FulfillmentJob.status == JobStatus.PENDING,
            FulfillmentJob.attempts == job.attempts,
        )
        .values(attempts=FulfillmentJob.attempts + 1, last_attempt_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def _build_message(order: Order, kind: JobKind):
    """Return (subject, html, text, attachments) for a job."""
    if kind == JobKind.ACCESS_EMAIL:
        items = [item for item in order.items if item.bundle is not None]
        subject, html_body, text_body = build_access_email(
            order.customer_name, order.id, [item.bundle.name for item in items]
        )
        receipt = build_order_receipt(
            order.id,
            order.customer_name,
            [(item.bundle.name, item.quantity, item.price) for item in items],
            order.total_amount,
        )
        return subject, html_body, text_body, [receipt]
    subject, html_body, text_body = build_rejection_email(order.customer_name, order.id, order.admin_notes or "")
    return subject, html_body, text_body, []


async def dispatch_job(context, job_id: int) -> bool:
    """Send one job's email. Returns True when sent; never raises."""
    started = utcnow()
    db = context.session_factory()
    try:
        job = db.get(FulfillmentJob, job_id)
        if job is None or job.status != JobStatus.PENDING:
            return False
        if not _claim(db, job):
            logger.info("Fulfillment job %s already claimed", job_id)
            return False
        db.refresh(job)

        order = db.get(Order, job.order_id)
        try:
            subject, html_body, text_body, attachments = _build_message(order, job.kind)
            await context.mailer.send(order.email, subject, html_body, text_body, attachments=attachments or None)
        except Exception as e:
            elapsed = (utcnow() - started).total_seconds()
            job.last_error = str(e)[:2000]
            if job.attempts >= settings.FULFILLMENT_MAX_ATTEMPTS:
                job.status = JobStatus.FAILED
                job.processed_at = utcnow()
            db.commit()
            logger.error(
                "[EMAIL FAILED] %s for order %s after %.2fs (attempt %d/%d)",
                job.kind.value, job.order_id, elapsed, job.attempts, settings.FULFILLMENT_MAX_ATTEMPTS,
                exc_info=True,
            )
            return False

        job.status = JobStatus.SENT
        job.processed_at = utcnow()
        job.last_error = None
        if job.kind == JobKind.ACCESS_EMAIL:
            try:
                order_state.transition(db, order.id, OrderStatus.COMPLETED, expected=[OrderStatus.APPROVED])
            except InvalidStateError:
                logger.warning("Order %s left %s before completion", order.id, order.status.value)
        db.commit()
        logger.info(
            "[EMAIL SUCCESS] %s for order %s in %.2fs",
            job.kind.value, job.order_id, (utcnow() - started).total_seconds(),
        )
        return True
    except Exception:
        db.rollback()
        logger.exception("Fulfillment job %s crashed", job_id)
        return False
    finally:
        db.close()


async def process_pending_jobs(
    context,
    batch_size: int = 20,
    retry_delay_seconds: Optional[float] = None,
) -> Dict[str, int]:
    """Dispatch PENDING jobs left behind by a restart or an earlier failure.

    A job is only picked up once ``retry_delay_seconds`` have passed since it
    was created or last attempted, so the request's own background dispatch
    is not raced.
    """
    if retry_delay_seconds is None:
        retry_delay_seconds = settings.FULFILLMENT_RETRY_DELAY_SECONDS
    cutoff = utcnow() - timedelta(seconds=retry_delay_seconds)

    db = context.session_factory()
    try:
        job_ids = [
            job_id
            for (job_id,) in db.query(FulfillmentJob.id)
            .filter(
                FulfillmentJob.status == JobStatus.PENDING,
                or_(
                    and_(FulfillmentJob.last_attempt_at.is_(None), FulfillmentJob.created_at <= cutoff),
                    FulfillmentJob.last_attempt_at <= cutoff,
                ),
            )
            .order_by(FulfillmentJob.created_at)
            .limit(batch_size)
        ]
    finally:
        db.close()

    stats = {"processed": 0, "sent": 0, "failed": 0}
    for job_id in job_ids:
        stats["processed"] += 1
        if await dispatch_job(context, job_id):
            stats["sent"] += 1
        else:
            stats["failed"] += 1
    if job_ids:
        logger.info("Fulfillment sweep: %s", stats)
    return stats


async def run_sweeper(context, interval_seconds: float, retry_delay_seconds: Optional[float] = None):
    """Sweep the outbox every ``interval_seconds`` until cancelled."""
    logger.info("Fulfillment sweeper started (every %ss)", interval_seconds)
    while True:
        try:
            await process_pending_jobs(context, retry_delay_seconds=retry_delay_seconds)
        except Exception:
            logger.exception("Fulfillment sweep failed")
        await asyncio.sleep(interval_seconds)
