"""Configuration management for the Rift escrow core"""

import os
import logging
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, ROUND_HALF_EVEN

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

load_dotenv()


def _validate_decimal(env_var: str, default: str, min_val: str, max_val: str) -> Decimal:
    """Read a Decimal setting with bounds checking, falling back to the default"""
    raw = os.getenv(env_var, default)
    try:
        value = Decimal(raw)
    except (InvalidOperation, TypeError) as e:
        logger.error(f"❌ Invalid {env_var} value '{raw}': {e}. Using default {default}")
        return Decimal(default)

    if not value.is_finite():
        logger.error(f"❌ {env_var}={raw} is not a finite number. Using default {default}")
        return Decimal(default)

    if value < Decimal(min_val):
        logger.error(f"❌ {env_var}={value} is below minimum {min_val}. Using default {default}")
        return Decimal(default)

    if value > Decimal(max_val):
        logger.error(f"❌ {env_var}={value} exceeds maximum {max_val}. Using default {default}")
        return Decimal(default)

    logger.debug(f"✅ {env_var}={value} validated successfully")
    return value


def _validate_int(env_var: str, default: int, min_val: int, max_val: int) -> int:
    """Read an integer setting with bounds checking, falling back to the default"""
    raw = os.getenv(env_var)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.error(f"❌ Invalid {env_var} value '{raw}'. Using default {default}")
        return default

    if value < min_val or value > max_val:
        logger.error(
            f"❌ {env_var}={value} outside allowed range {min_val}-{max_val}. Using default {default}"
        )
        return default
    return value


def _rounding_mode(env_var: str, default: str = "HALF_UP") -> str:
    modes = {"HALF_UP": ROUND_HALF_UP, "HALF_EVEN": ROUND_HALF_EVEN}
    name = os.getenv(env_var, default).upper().strip()
    if name not in modes:
        logger.error(f"❌ {env_var}={name} is not one of {sorted(modes)}. Using {default}")
        name = default
    return modes[name]


class Config:
    """Application configuration"""

    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///rift_escrow.db")

    # Fee configuration. Read only through FeeSchedule.from_config()
    BUYER_FEE_RATE = _validate_decimal("BUYER_FEE_RATE", "0.03", "0", "0.25")
    SELLER_FEE_RATE = _validate_decimal("SELLER_FEE_RATE", "0.05", "0", "0.25")
    FEE_ROUNDING = _rounding_mode("FEE_ROUNDING")

    # Refund policy: keep the buyer fee as platform revenue when the seller
    # had already delivered proof before the dispute went against them
    RETAIN_BUYER_FEE_ON_REFUND_AFTER_PROOF = (
        os.getenv("RETAIN_BUYER_FEE_ON_REFUND_AFTER_PROOF", "false").lower() == "true"
    )

    # Evidence verification policy
    AMOUNT_VARIANCE_TOLERANCE_PERCENT = _validate_decimal(
        "AMOUNT_VARIANCE_TOLERANCE_PERCENT", "5", "0", "50"
    )
    DATE_WINDOW_DAYS = _validate_int("DATE_WINDOW_DAYS", 7, 1, 90)
    DATE_RECENT_DAYS = _validate_int("DATE_RECENT_DAYS", 30, 1, 365)
    REVIEW_SCORE_THRESHOLD = _validate_int("REVIEW_SCORE_THRESHOLD", 60, 0, 100)
    MAX_ISSUES_BEFORE_REVIEW = _validate_int("MAX_ISSUES_BEFORE_REVIEW", 2, 0, 20)
    FAIL_CLOSED_SCORE = _validate_int("FAIL_CLOSED_SCORE", 50, 0, 100)
    DUPLICATE_SELLER_FLAG_THRESHOLD = _validate_int("DUPLICATE_SELLER_FLAG_THRESHOLD", 3, 1, 100)
    DUPLICATE_LOOKBACK_DAYS = _validate_int("DUPLICATE_LOOKBACK_DAYS", 30, 1, 365)

    # Auto-release windows (hours)
    PHYSICAL_TRANSIT_WINDOW_HOURS = _validate_int("PHYSICAL_TRANSIT_WINDOW_HOURS", 336, 1, 2160)
    PHYSICAL_DELIVERY_GRACE_HOURS = _validate_int("PHYSICAL_DELIVERY_GRACE_HOURS", 12, 1, 720)
    DIGITAL_SUBMISSION_WINDOW_HOURS = _validate_int("DIGITAL_SUBMISSION_WINDOW_HOURS", 48, 1, 720)
    DIGITAL_ACCESS_WINDOW_HOURS = _validate_int("DIGITAL_ACCESS_WINDOW_HOURS", 24, 1, 720)
    SERVICES_SUBMISSION_WINDOW_HOURS = _validate_int("SERVICES_SUBMISSION_WINDOW_HOURS", 72, 1, 720)

    # Background jobs
    AUTO_RELEASE_SWEEP_INTERVAL_SECONDS = _validate_int(
        "AUTO_RELEASE_SWEEP_INTERVAL_SECONDS", 60, 5, 86400
    )
    PAYOUT_SWEEP_INTERVAL_SECONDS = _validate_int("PAYOUT_SWEEP_INTERVAL_SECONDS", 300, 5, 86400)
    AUTO_RELEASE_BATCH_SIZE = _validate_int("AUTO_RELEASE_BATCH_SIZE", 100, 1, 10000)
    PAYOUT_DELAY_BUSINESS_DAYS = _validate_int("PAYOUT_DELAY_BUSINESS_DAYS", 2, 0, 30)

    # External collaborators
    EXTERNAL_CALL_TIMEOUT_SECONDS = _validate_int("EXTERNAL_CALL_TIMEOUT_SECONDS", 10, 1, 120)
    PAYMENT_GATEWAY_URL = os.getenv("PAYMENT_GATEWAY_URL", "")
    OBJECT_STORAGE_URL = os.getenv("OBJECT_STORAGE_URL", "")
    SCORING_SERVICE_URL = os.getenv("SCORING_SERVICE_URL", "")
    IDENTITY_SERVICE_URL = os.getenv("IDENTITY_SERVICE_URL", "")
    EXTERNAL_API_KEY = os.getenv("EXTERNAL_API_KEY", "")

    # Vault
    VAULT_ENCRYPTION_KEY = os.getenv("VAULT_ENCRYPTION_KEY", "")
    ALLOWED_PROOF_MIME_TYPES = [
        m.strip()
        for m in os.getenv(
            "ALLOWED_PROOF_MIME_TYPES",
            "application/pdf,image/png,image/jpeg,image/webp,text/plain",
        ).split(",")
        if m.strip()
    ]
    MAX_PROOF_FILE_BYTES = _validate_int("MAX_PROOF_FILE_BYTES", 25 * 1024 * 1024, 1, 500 * 1024 * 1024)

    @classmethod
    def grace_hours(cls, item_kind: str) -> dict:
        """Submission and first-access windows for a non-physical item kind. Services have no access window."""
        if item_kind == "services":
            return {"submission": cls.SERVICES_SUBMISSION_WINDOW_HOURS, "access": None}
        return {
            "submission": cls.DIGITAL_SUBMISSION_WINDOW_HOURS,
            "access": cls.DIGITAL_ACCESS_WINDOW_HOURS,
        }
