"""Database leases for jobs that must not overlap across processes.

The web workers (POST /cron/reconcile), the `flask reconcile-pending`
cron command and the `flask run-sweeper` worker all share the database,
so that is where the sweep's mutual exclusion lives.
"""

import logging
import uuid
from datetime import timedelta

from sqlalchemy import insert
from sqlalchemy.exc import IntegrityError

from app.extensions import db
from app.models.job_lease import JobLease
from app.services.billing_service import utcnow

logger = logging.getLogger(__name__)


def acquire(name, ttl_seconds):
    """Claim the named lease for ttl_seconds.

    Returns a holder token, or None while another holder's lease is live.
    """
    holder = str(uuid.uuid4())
    now = utcnow()
    expires_at = now + timedelta(seconds=ttl_seconds)

    try:
        db.session.execute(
            insert(JobLease).values(
                name=name, holder=holder, acquired_at=now, expires_at=expires_at
            )
        )
        db.session.commit()
        return holder
    except IntegrityError:
        db.session.rollback()

    taken = JobLease.query.filter(
        JobLease.name == name, JobLease.expires_at < now
    ).update(
        {"holder": holder, "acquired_at": now, "expires_at": expires_at},
        synchronize_session=False,
    )
    db.session.commit()
    if taken:
        logger.warning(f"Took over expired lease {name}")
        return holder
    return None


def release(name, holder):
    """Drop the lease if this holder still owns it."""
    JobLease.query.filter_by(name=name, holder=holder).delete(
        synchronize_session=False
    )
    db.session.commit()
