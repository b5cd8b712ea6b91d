"""Duplicate-use ledger — every payment proof is honored at most once.

Two physical shapes of the same exactly-once rule:
- used_proofs: "add to used set". The UNIQUE proof_id constraint decides
  which of two racing writers wins.
- redemption_codes: "remove from valid set". A DELETE whose rowcount is 1
  wins; the claimed code is also written to used_proofs so it can never be
  re-added.

Entries are permanent. Nothing in this module purges the ledger.
"""

import logging
import re
import secrets

from sqlalchemy.exc import IntegrityError

from chatshop.extensions import db
from chatshop.models.audit import AuditEvent
from chatshop.models.checkout import PaymentMethod
from chatshop.models.ledger import RedemptionCode, UsedProof

logger = logging.getLogger(__name__)

MAX_CODES_PER_BATCH = 1000
CODE_PATTERN = re.compile(r"^[A-Z0-9]{32}$")


def normalize_proof_id(method, raw: str) -> str:
    """Return the ledger key for a proof, e.g. "bank_slip:REF-9"."""
    method = PaymentMethod(method)
    value = raw.strip()
    if method == PaymentMethod.REDEMPTION_CODE:
        value = value.upper()
    return f"{method.value}:{value}"


def _short(proof_id: str) -> str:
    method, _, value = proof_id.partition(":")
    if len(value) <= 8:
        return proof_id
    return f"{method}:{value[:4]}...{value[-4:]}"


def is_used(proof_id: str) -> bool:
    return (
        db.session.scalar(
            db.select(UsedProof.id).where(UsedProof.proof_id == proof_id)
        )
        is not None
    )


def try_record(proof_id: str, method, commit: bool = True) -> bool:
    """Record a proof as consumed.

    Args:
        proof_id: Normalized id from `normalize_proof_id`.
        method: PaymentMethod the proof belongs to.
        commit: Commit immediately. With False the row is only flushed so it
            joins the caller's transaction.

    Returns:
        True if this call recorded the proof, False if it was already used.
        On a constraint conflict the session is rolled back, which discards
        the caller's pending work as well.
    """
    if is_used(proof_id):
        logger.warning(f"Proof already used: {_short(proof_id)}")
        return False

    db.session.add(UsedProof(proof_id=proof_id, method=PaymentMethod(method).value))
    try:
        if commit:
            db.session.commit()
        else:
            db.session.flush()
    except IntegrityError:
        db.session.rollback()
        logger.warning(f"Proof recorded concurrently: {_short(proof_id)}")
        return False

    logger.info(f"Recorded proof {_short(proof_id)}")
    return True


def claim_redemption_code(code: str, commit: bool = True):
    """Atomically remove a code from the valid set and mark it used.

    Returns:
        The normalized proof id on success, None if the code is not (or no
        longer) valid.
    """
    normalized = code.strip().upper()
    result = db.session.execute(
        db.delete(RedemptionCode)
        .where(RedemptionCode.code == normalized)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        if commit:
            db.session.rollback()
        return None

    proof_id = normalize_proof_id(PaymentMethod.REDEMPTION_CODE, normalized)
    db.session.add(
        UsedProof(proof_id=proof_id, method=PaymentMethod.REDEMPTION_CODE.value)
    )
    try:
        if commit:
            db.session.commit()
        else:
            db.session.flush()
    except IntegrityError:
        db.session.rollback()
        logger.warning(f"Redemption code already in ledger: {_short(proof_id)}")
        return None

    logger.info(f"Claimed redemption code {_short(proof_id)}")
    return proof_id


def generate_redemption_code() -> str:
    """32 upper-case hex characters."""
    return secrets.token_hex(16).upper()


def _code_known(code: str) -> bool:
    if db.session.get(RedemptionCode, code) is not None:
        return True
    return is_used(normalize_proof_id(PaymentMethod.REDEMPTION_CODE, code))


def add_redemption_codes(count: int = 1, code: str = None) -> list:
    """Add codes to the valid set.

    Args:
        count: How many random codes to generate (1-1000). Ignored when
            `code` is given.
        code: A specific code to add instead of random ones.

    Returns:
        The list of added codes.

    Raises:
        ValueError: count out of range, malformed code, or a code that is
            already valid or already used.
    """
    if code is not None:
        normalized = code.strip().upper()
        if not CODE_PATTERN.match(normalized):
            raise ValueError("Code must be 32 characters of A-Z and 0-9")
        if _code_known(normalized):
            raise ValueError("Code already exists or has been used")
        codes = [normalized]
    else:
        if count < 1 or count > MAX_CODES_PER_BATCH:
            raise ValueError(f"count must be between 1 and {MAX_CODES_PER_BATCH}")
        codes = []
        seen = set()
        while len(codes) < count:
            candidate = generate_redemption_code()
            if candidate in seen or _code_known(candidate):
                continue
            seen.add(candidate)
            codes.append(candidate)

    for value in codes:
        db.session.add(RedemptionCode(code=value))
    db.session.add(
        AuditEvent(
            action="codes.added",
            metadata_={"count": len(codes), "manual": code is not None},
        )
    )
    db.session.commit()

    logger.info(f"Added {len(codes)} redemption code(s)")
    return codes


def delete_redemption_code(code: str) -> bool:
    """Remove a still-valid code. Returns False if it was not in the valid set."""
    normalized = code.strip().upper()
    result = db.session.execute(
        db.delete(RedemptionCode)
        .where(RedemptionCode.code == normalized)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.session.rollback()
        return False

    db.session.add(AuditEvent(action="codes.deleted", metadata_={"code": normalized[:4]}))
    db.session.commit()
    logger.info(f"Deleted redemption code {normalized[:4]}...")
    return True


def valid_code_count() -> int:
    return db.session.scalar(db.select(db.func.count()).select_from(RedemptionCode))
