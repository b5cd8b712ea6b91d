"""Payment verifiers — one strategy per payment method.

Each verifier answers a single question: does this proof pay the expected
amount? It returns a VerificationResult and never touches the cart, the
checkout session or the orders. Provider problems (timeouts, rejections,
garbage responses) are failures, not exceptions. The only exception raised
is VerifierConfigError, when the payment channel itself is not configured.

- VoucherLinkVerifier: redeems a TrueMoney gift voucher into the shop wallet.
- BankSlipVerifier: downloads a slip image and sends it to the slip-check
  service; rejects reference ids already in the ledger.
- RedemptionCodeVerifier: claims a prepaid code from the valid set. Local
  and atomic: the claim is the verification.
"""

import enum
import logging
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

import requests
from flask import current_app

from chatshop.models.checkout import PaymentMethod
from chatshop.services import proof_ledger

logger = logging.getLogger(__name__)


class FailureReason(str, enum.Enum):
    INVALID_FORMAT = "invalid_format"
    SOLD_OUT = "sold_out"
    NOT_FOUND = "not_found"
    ALREADY_REDEEMED = "already_redeemed"
    EXPIRED = "expired"
    PROVIDER_ERROR = "provider_error"
    GENERIC_FAILURE = "generic_failure"
    AMOUNT_MISMATCH = "amount_mismatch"
    DUPLICATE_PROOF = "duplicate_proof"
    UNREADABLE_SLIP = "unreadable_slip"
    UNSUPPORTED_BANK = "unsupported_bank"
    QUOTA_EXHAUSTED = "quota_exhausted"
    CREDENTIALS_INVALID = "credentials_invalid"
    TIMEOUT = "timeout"
    NETWORK_ERROR = "network_error"
    MALFORMED_RESPONSE = "malformed_response"
    DOWNLOAD_FAILED = "download_failed"
    INVALID_CODE = "invalid_code"


class VerifierConfigError(Exception):
    """A payment channel is missing credentials or endpoints."""


@dataclass(frozen=True)
class VerificationResult:
    ok: bool
    proof_id: str = None
    settlement_ref: str = None
    settled_amount: Decimal = None
    reason: FailureReason = None
    message: str = ""
    proof_recorded: bool = False  # verifier already wrote the ledger entry

    @classmethod
    def success(cls, proof_id, settlement_ref, settled_amount, proof_recorded=False):
        return cls(
            ok=True,
            proof_id=proof_id,
            settlement_ref=settlement_ref,
            settled_amount=settled_amount,
            proof_recorded=proof_recorded,
        )

    @classmethod
    def failure(cls, reason, message, proof_id=None):
        return cls(ok=False, reason=FailureReason(reason), message=message, proof_id=proof_id)


def _to_amount(value):
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value).replace(",", ""))
    except InvalidOperation:
        return None
    return amount if amount.is_finite() else None


def _amount_matches(actual, expected, tolerance):
    return abs(actual - Decimal(expected)) < tolerance


# ──────────────────────────────────────────────
# Voucher link
# ──────────────────────────────────────────────

VOUCHER_LINK_REGEX = re.compile(
    r"https://gift\.truemoney\.com/campaign/\?v=([a-zA-Z0-9]{35})"
)

# Provider status codes, checked in this order against code and message.
VOUCHER_ERRORS = [
    ("VOUCHER_OUT_OF_STOCK", FailureReason.SOLD_OUT,
     "This voucher has already been fully claimed."),
    ("VOUCHER_NOT_FOUND", FailureReason.NOT_FOUND,
     "Voucher not found. Please check the link."),
    ("TARGET_USER_HAS_ALREADY_REDEEMED", FailureReason.ALREADY_REDEEMED,
     "The shop has already redeemed this voucher."),
    ("INTERNAL_ERROR", FailureReason.PROVIDER_ERROR,
     "TrueMoney is temporarily unavailable. Please try again."),
    ("PROCESS_VOUCHER_FAILED", FailureReason.PROVIDER_ERROR,
     "TrueMoney is temporarily unavailable. Please try again."),
    ("VOUCHER_EXPIRED", FailureReason.EXPIRED,
     "This voucher has expired."),
]


class VoucherLinkVerifier:
    method = PaymentMethod.VOUCHER
    requires_network = True

    def __init__(self, wallet_phone, redeem_url, timeout=20, tolerance=Decimal("0.01")):
        self.wallet_phone = wallet_phone
        self.redeem_url = redeem_url
        self.timeout = timeout
        self.tolerance = Decimal(tolerance)

    def parse(self, proof: str):
        """Return the voucher hash found in the text, or None."""
        match = VOUCHER_LINK_REGEX.search((proof or "").strip())
        return match.group(1) if match else None

    def check_config(self):
        if not self.wallet_phone:
            raise VerifierConfigError("TRUEMONEY_WALLET_PHONE is not configured")
        if not self.redeem_url or "{voucher_hash}" not in self.redeem_url:
            raise VerifierConfigError("TRUEMONEY_REDEEM_URL is not configured")

    def verify(self, expected_amount, proof: str) -> VerificationResult:
        voucher_hash = self.parse(proof)
        if not voucher_hash:
            return VerificationResult.failure(
                FailureReason.INVALID_FORMAT,
                "Invalid voucher link. Expected https://gift.truemoney.com/campaign/?v=...",
            )
        self.check_config()

        proof_id = proof_ledger.normalize_proof_id(self.method, voucher_hash)
        logger.info(f"Redeeming voucher {voucher_hash[:6]}... expecting {expected_amount}")
        try:
            resp = requests.post(
                self.redeem_url.format(voucher_hash=voucher_hash),
                json={"mobile": self.wallet_phone, "voucher_hash": voucher_hash},
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except requests.Timeout:
            logger.warning("Voucher redemption timed out")
            return VerificationResult.failure(
                FailureReason.TIMEOUT, "TrueMoney did not respond in time. Please try again.",
                proof_id=proof_id,
            )
        except requests.RequestException as e:
            logger.warning(f"Voucher redemption network error: {e}")
            return VerificationResult.failure(
                FailureReason.NETWORK_ERROR, "Could not reach TrueMoney. Please try again.",
                proof_id=proof_id,
            )

        try:
            data = resp.json()
        except ValueError:
            logger.warning(f"Voucher redemption returned non-JSON (HTTP {resp.status_code})")
            return VerificationResult.failure(
                FailureReason.MALFORMED_RESPONSE, "Unexpected response from TrueMoney.",
                proof_id=proof_id,
            )
        if not isinstance(data, dict):
            return VerificationResult.failure(
                FailureReason.MALFORMED_RESPONSE, "Unexpected response from TrueMoney.",
                proof_id=proof_id,
            )

        status = data.get("status") or {}
        code = str(status.get("code") or "")
        if code != "SUCCESS":
            text = f"{code} {status.get('message') or ''}"
            for needle, reason, message in VOUCHER_ERRORS:
                if needle in text:
                    break
            else:
                reason, message = FailureReason.GENERIC_FAILURE, "The voucher could not be redeemed."
            logger.warning(f"Voucher redemption rejected: {text.strip()}")
            return VerificationResult.failure(reason, message, proof_id=proof_id)

        ticket = (data.get("data") or {}).get("my_ticket") or {}
        amount = _to_amount(ticket.get("amount_baht"))
        if amount is None:
            logger.error(f"Voucher {voucher_hash[:6]}... redeemed but amount unreadable")
            return VerificationResult.failure(
                FailureReason.MALFORMED_RESPONSE,
                "The voucher was redeemed but its amount could not be read. Please contact us.",
                proof_id=proof_id,
            )
        if not _amount_matches(amount, expected_amount, self.tolerance):
            logger.warning(f"Voucher amount mismatch: got {amount}, expected {expected_amount}")
            return VerificationResult.failure(
                FailureReason.AMOUNT_MISMATCH,
                f"Voucher amount ({amount:.2f}) does not match the total "
                f"({Decimal(expected_amount):.2f}). Please contact us.",
                proof_id=proof_id,
            )

        return VerificationResult.success(proof_id, voucher_hash, amount)


# ──────────────────────────────────────────────
# Bank slip
# ──────────────────────────────────────────────

# Provider messages, checked in order.
SLIP_ERRORS = [
    ("ClientID-Secret ไม่ถูกต้อง", FailureReason.CREDENTIALS_INVALID,
     "Slip checking is misconfigured. Please contact us."),
    ("Package expired", FailureReason.QUOTA_EXHAUSTED,
     "Slip checking is unavailable right now. Please contact us."),
    ("Invalid quota", FailureReason.QUOTA_EXHAUSTED,
     "Slip checking is unavailable right now. Please contact us."),
    ("Invalid image", FailureReason.UNREADABLE_SLIP,
     "The slip image could not be read. Please send a clearer picture."),
    ("Unable read QR", FailureReason.UNREADABLE_SLIP,
     "The slip image could not be read. Please send a clearer picture."),
    ("Not support bank slip", FailureReason.UNSUPPORTED_BANK,
     "Slips from this bank are not supported yet."),
    ("Duplicate slip", FailureReason.DUPLICATE_PROOF,
     "This slip has already been used."),
]


class BankSlipVerifier:
    method = PaymentMethod.BANK_SLIP
    requires_network = True

    def __init__(
        self,
        check_url,
        client_secret,
        timeout=45,
        download_timeout=15,
        max_image_bytes=10 * 1024 * 1024,
        tolerance=Decimal("0.01"),
    ):
        self.check_url = check_url
        self.client_secret = client_secret
        self.timeout = timeout
        self.download_timeout = download_timeout
        self.max_image_bytes = max_image_bytes
        self.tolerance = Decimal(tolerance)

    def parse(self, proof: str):
        """Return the slip image URL, or None."""
        url = (proof or "").strip()
        if url.startswith("https://") or url.startswith("http://"):
            return url
        return None

    def check_config(self):
        if not self.client_secret or ":" not in self.client_secret:
            raise VerifierConfigError("SLIP_CHECK_CLIENT_SECRET must be ClientID:Secret")
        if not self.check_url or not self.check_url.startswith(("https://", "http://")):
            raise VerifierConfigError("SLIP_CHECK_URL is not configured")

    def _download(self, image_url):
        """Fetch the slip image. Returns bytes, or None on any failure."""
        try:
            resp = requests.get(image_url, timeout=self.download_timeout, stream=True)
        except requests.RequestException as e:
            logger.warning(f"Slip download failed: {e}")
            return None
        try:
            if resp.status_code != 200:
                logger.warning(f"Slip download returned HTTP {resp.status_code}")
                return None
            chunks = []
            size = 0
            for chunk in resp.iter_content(chunk_size=65536):
                size += len(chunk)
                if size > self.max_image_bytes:
                    logger.warning(f"Slip image larger than {self.max_image_bytes} bytes")
                    return None
                chunks.append(chunk)
            return b"".join(chunks)
        except requests.RequestException as e:
            logger.warning(f"Slip download interrupted: {e}")
            return None
        finally:
            resp.close()

    def verify(self, expected_amount, proof: str) -> VerificationResult:
        image_url = self.parse(proof)
        if not image_url:
            return VerificationResult.failure(
                FailureReason.INVALID_FORMAT, "Please send the transfer slip as an image."
            )
        self.check_config()

        image = self._download(image_url)
        if not image:
            return VerificationResult.failure(
                FailureReason.DOWNLOAD_FAILED, "Could not download the slip image. Please send it again."
            )

        logger.info(f"Checking slip ({len(image)} bytes), expecting {expected_amount}")
        try:
            resp = requests.post(
                self.check_url,
                data={"ClientID-Secret": self.client_secret},
                files={"image": ("slip.jpg", image, "image/jpeg")},
                timeout=self.timeout,
            )
        except requests.Timeout:
            logger.warning("Slip check timed out")
            return VerificationResult.failure(
                FailureReason.TIMEOUT, "Slip checking took too long. Please try again."
            )
        except requests.RequestException as e:
            logger.warning(f"Slip check network error: {e}")
            return VerificationResult.failure(
                FailureReason.NETWORK_ERROR, "Could not reach the slip checking service. Please try again."
            )

        try:
            data = resp.json()
        except ValueError:
            logger.warning(f"Slip check returned non-JSON (HTTP {resp.status_code})")
            return VerificationResult.failure(
                FailureReason.MALFORMED_RESPONSE, "Unexpected response from the slip checking service."
            )
        if not isinstance(data, dict):
            return VerificationResult.failure(
                FailureReason.MALFORMED_RESPONSE, "Unexpected response from the slip checking service."
            )

        result = data.get("result") if isinstance(data.get("result"), dict) else {}
        if data.get("status") is not True or "amount" not in result:
            text = str(data.get("message") or "")
            for needle, reason, message in SLIP_ERRORS:
                if needle in text:
                    break
            else:
                reason, message = FailureReason.PROVIDER_ERROR, "The slip could not be verified."
            logger.warning(f"Slip check rejected: {text or data}")
            return VerificationResult.failure(reason, message)

        reference_id = str(result.get("reference_id") or "").strip()
        if not reference_id:
            logger.warning("Slip check returned no reference_id")
            return VerificationResult.failure(
                FailureReason.MALFORMED_RESPONSE,
                "The slip could not be identified. Please contact us.",
            )

        proof_id = proof_ledger.normalize_proof_id(self.method, reference_id)
        if proof_ledger.is_used(proof_id):
            logger.warning(f"Duplicate slip reference {reference_id}")
            return VerificationResult.failure(
                FailureReason.DUPLICATE_PROOF, "This slip has already been used.", proof_id=proof_id
            )

        amount = _to_amount(result.get("amount"))
        if amount is None:
            return VerificationResult.failure(
                FailureReason.MALFORMED_RESPONSE,
                "The slip amount could not be read.",
                proof_id=proof_id,
            )
        if not _amount_matches(amount, expected_amount, self.tolerance):
            logger.warning(f"Slip amount mismatch: got {amount}, expected {expected_amount}")
            return VerificationResult.failure(
                FailureReason.AMOUNT_MISMATCH,
                f"Slip amount ({amount:.2f}) does not match the total "
                f"({Decimal(expected_amount):.2f}).",
                proof_id=proof_id,
            )

        return VerificationResult.success(proof_id, reference_id, amount)


# ──────────────────────────────────────────────
# Redemption code
# ──────────────────────────────────────────────

class RedemptionCodeVerifier:
    method = PaymentMethod.REDEMPTION_CODE
    requires_network = False

    def __init__(self, code_length=32):
        self.code_length = code_length
        self._pattern = re.compile(rf"^[A-Za-z0-9]{{{code_length}}}$")

    def parse(self, proof: str):
        """Return the upper-cased code, or None if the shape is wrong."""
        code = (proof or "").strip()
        if not self._pattern.match(code):
            return None
        return code.upper()

    def check_config(self):
        pass

    def verify(self, expected_amount, proof: str, commit: bool = False) -> VerificationResult:
        """Claim the code from the valid set.

        With commit=False (the default) the claim joins the caller's open
        transaction; settlement commits or rolls it back together with the
        stock consumption.
        """
        code = self.parse(proof)
        if not code:
            return VerificationResult.failure(
                FailureReason.INVALID_FORMAT,
                f"Codes are {self.code_length} letters and digits.",
            )

        proof_id = proof_ledger.claim_redemption_code(code, commit=commit)
        if proof_id is None:
            logger.warning(f"Invalid or used redemption code {code[:4]}...")
            return VerificationResult.failure(
                FailureReason.INVALID_CODE, "This code is invalid or has already been used."
            )
        return VerificationResult.success(
            proof_id, code, Decimal(expected_amount), proof_recorded=True
        )


def get_verifier(method, config=None):
    """Build the verifier for a payment method from app config."""
    config = config if config is not None else current_app.config
    method = PaymentMethod(method)
    tolerance = config.get("AMOUNT_TOLERANCE", Decimal("0.01"))

    if method == PaymentMethod.VOUCHER:
        return VoucherLinkVerifier(
            wallet_phone=config.get("TRUEMONEY_WALLET_PHONE"),
            redeem_url=config.get("TRUEMONEY_REDEEM_URL"),
            timeout=config.get("VOUCHER_TIMEOUT", 20),
            tolerance=tolerance,
        )
    if method == PaymentMethod.BANK_SLIP:
        return BankSlipVerifier(
            check_url=config.get("SLIP_CHECK_URL"),
            client_secret=config.get("SLIP_CHECK_CLIENT_SECRET"),
            timeout=config.get("SLIP_CHECK_TIMEOUT", 45),
            download_timeout=config.get("SLIP_DOWNLOAD_TIMEOUT", 15),
            max_image_bytes=config.get("SLIP_MAX_IMAGE_BYTES", 10 * 1024 * 1024),
            tolerance=tolerance,
        )
    return RedemptionCodeVerifier(code_length=config.get("REDEMPTION_CODE_LENGTH", 32))
