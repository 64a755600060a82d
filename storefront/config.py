"""
Runtime configuration read from environment variables.

Variables:
- DB_NAME: SQLite database path (default: game_store.db)
- TAX_RATE: global tax fraction, strictly between 0 and 1 (default: 0.23)
- EMAIL_ENABLED: "true" to send invoice emails through SES (default: false)
- SES_SENDER: verified SES sender address, required when email is enabled
- AWS_REGION: SES region (default: eu-west-1)
- LOG_LEVEL: logging level name (default: INFO)
- PURCHASE_TIMEOUT: seconds a purchase transaction may run (default: unset)
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Mapping, Optional

from .pricing import DEFAULT_TAX_RATE

_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    db_name: str = "game_store.db"
    tax_rate: Decimal = DEFAULT_TAX_RATE
    email_enabled: bool = False
    ses_sender: Optional[str] = None
    aws_region: str = "eu-west-1"
    log_level: str = "INFO"
    purchase_timeout: Optional[float] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ

        raw_tax_rate = env.get("TAX_RATE", str(DEFAULT_TAX_RATE))
        try:
            tax_rate = Decimal(raw_tax_rate)
        except InvalidOperation:
            raise RuntimeError(f"TAX_RATE must be a decimal number, got {raw_tax_rate!r}.") from None
        if not Decimal("0") < tax_rate < Decimal("1"):
            raise RuntimeError(f"TAX_RATE must be between 0 and 1, got {raw_tax_rate!r}.")

        email_enabled = env.get("EMAIL_ENABLED", "false").strip().lower() in _TRUE_VALUES
        ses_sender = env.get("SES_SENDER") or None
        if email_enabled and not ses_sender:
            raise RuntimeError(
                "Missing environment variable: SES_SENDER. "
                "Set SES_SENDER to a verified sender address or disable EMAIL_ENABLED."
            )

        raw_timeout = env.get("PURCHASE_TIMEOUT")
        try:
            purchase_timeout = float(raw_timeout) if raw_timeout else None
        except ValueError:
            raise RuntimeError(f"PURCHASE_TIMEOUT must be a number of seconds, got {raw_timeout!r}.") from None

        return cls(
            db_name=env.get("DB_NAME", "game_store.db"),
            tax_rate=tax_rate,
            email_enabled=email_enabled,
            ses_sender=ses_sender,
            aws_region=env.get("AWS_REGION", "eu-west-1"),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
            purchase_timeout=purchase_timeout,
        )


__all__ = ["Settings"]
