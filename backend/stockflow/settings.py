# Overview: Injected value objects built from app configuration.

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping


@dataclass(frozen=True)
class PaymentSettings:
    """Payment collection details shown to distributors (read-only, from config)."""
    upi_id: str

    @classmethod
    def from_config(cls, config: Mapping) -> "PaymentSettings":
        return cls(upi_id=config["PAYMENT_UPI_ID"])

    def to_dict(self) -> dict:
        return {"upi_id": self.upi_id}
