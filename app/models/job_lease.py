"""Job lease model.

One row per named background job while some process is running it. The
primary key makes claiming a lease a single INSERT that only one process
can win; an expired row may be taken over with a conditional UPDATE.
"""

from app.extensions import db


class JobLease(db.Model):
    __tablename__ = "job_leases"

    name = db.Column(db.String(100), primary_key=True)  # e.g. "reconcile_sweep"
    holder = db.Column(db.String(36), nullable=False)
    acquired_at = db.Column(db.DateTime(timezone=True), nullable=False)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)

    def __repr__(self):
        return f"<JobLease {self.name} until {self.expires_at}>"
