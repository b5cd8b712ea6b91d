"""Audit event model.

Records settlement escalations (reconciliation required, stale proofs) and
operator actions (code generation, session resolution) for manual review.
"""

import uuid

from chatshop.extensions import db


class AuditEvent(db.Model):
    __tablename__ = "audit_events"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    customer_id = db.Column(db.String(64), nullable=True, index=True)
    action = db.Column(db.String(255), nullable=False)  # e.g. "settlement.reconciliation_required"
    metadata_ = db.Column(
        "metadata", db.JSON, default=dict
    )  # extra context, named metadata_ to avoid Python builtin clash
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    def __repr__(self):
        return f"<AuditEvent {self.action}>"
