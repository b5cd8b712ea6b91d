"""Duplicate-use ledger models.

- UsedProof: every payment proof ever honored, keyed by its normalized id
  ("bank_slip:<reference id>", "voucher:<hash>", "redemption_code:<code>").
  The UNIQUE constraint is the exactly-once guard; rows are never purged.
- RedemptionCode: prepaid codes that are still valid. Claiming a code
  deletes its row and records it in used_proofs in one transaction.
"""

import uuid

from chatshop.extensions import db


class UsedProof(db.Model):
    __tablename__ = "used_proofs"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    proof_id = db.Column(
        db.String(255), unique=True, nullable=False
    )  # e.g. "bank_slip:0151234567890"
    method = db.Column(db.String(32), nullable=False)
    consumed_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    def __repr__(self):
        return f"<UsedProof {self.proof_id}>"


class RedemptionCode(db.Model):
    __tablename__ = "redemption_codes"

    code = db.Column(db.String(64), primary_key=True)  # upper-case alphanumeric
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    def __repr__(self):
        return f"<RedemptionCode {self.code[:6]}...>"
