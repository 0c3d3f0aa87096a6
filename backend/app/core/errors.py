"""
Payment error taxonomy.

Every error carries the HTTP status it maps to; ``app.main`` turns them into
``{"detail": ..., "error": ...}`` responses after passing the message through
``sanitize_error_message``.
"""
import re

from app.config import settings

REDACTED = "[REDACTED]"

_SECRET_ENV_NAMES = (
    "SOLANA_DEPOSIT_MNEMONIC",
    "SOLANA_MASTER_SEED",
    "TRON_DEPOSIT_MNEMONIC",
)
_SENSITIVE_PATTERN = re.compile(
    r"mnemonic|seed phrase|seed|private[\s_-]*key|secret[\s_-]*key",
    re.IGNORECASE,
)


class PaymentError(Exception):
    status_code = 500
    kind = "payment_error"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class ConfigurationError(PaymentError):
    """Missing mnemonic, treasury address or contract configuration. Not retried."""
    status_code = 500
    kind = "configuration_error"


class DerivationError(PaymentError):
    status_code = 500
    kind = "derivation_error"


class ValidationError(PaymentError):
    status_code = 400
    kind = "validation_error"


class NotFoundError(PaymentError):
    status_code = 404
    kind = "not_found"


class VerificationFailure(PaymentError):
    status_code = 400
    kind = "verification_failed"


class RecipientMismatch(VerificationFailure):
    kind = "recipient_mismatch"


class InsufficientBalanceError(PaymentError):
    status_code = 400
    kind = "insufficient_balance"


class InsufficientFeesError(PaymentError):
    status_code = 400
    kind = "insufficient_fees"


class ConflictError(PaymentError):
    status_code = 409
    kind = "conflict"


class ExternalDependencyError(PaymentError):
    """RPC or price source unavailable; safe for the client to retry."""
    status_code = 502
    kind = "external_dependency_error"


class AllocationError(PaymentError):
    status_code = 500
    kind = "allocation_error"


class SweepFailure(PaymentError):
    status_code = 500
    kind = "sweep_failed"

    def __init__(self, message: str = "", sweep=None):
        super().__init__(message)
        self.sweep = sweep


def _configured_secrets() -> list[str]:
    values = [
        settings.SOLANA_DEPOSIT_MNEMONIC,
        settings.SOLANA_MASTER_SEED,
        settings.TRON_DEPOSIT_MNEMONIC,
    ]
    secrets = []
    for v in values:
        v = (v or "").strip()
        if not v:
            continue
        secrets.append(v)
        # individual words of a mnemonic are not secret, runs of them are
        words = v.split()
        if len(words) > 3:
            secrets.extend(" ".join(words[i:i + 3]) for i in range(len(words) - 2))
    return sorted(set(secrets), key=len, reverse=True)


def sanitize_error_message(message, keep=()) -> str:
    """Redact anything that could carry key material from an error message.

    64-hex runs look like raw private keys and are redacted, except values
    listed in ``keep`` (a TRON txid the caller already knows is public).
    """
    text = str(message or "")
    for secret in _configured_secrets():
        text = text.replace(secret, REDACTED)
    for name in _SECRET_ENV_NAMES:
        text = text.replace(name, REDACTED)
    public = {k.lower().removeprefix("0x") for k in keep if k}

    def _hex(match):
        value = match.group(0)
        return value if value.lower().removeprefix("0x") in public else REDACTED

    text = re.sub(r"\b(?:0x)?[0-9a-fA-F]{64}\b", _hex, text)
    return _SENSITIVE_PATTERN.sub(REDACTED, text)
