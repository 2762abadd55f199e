# Overview: Minor-unit money helpers shared by checkout, reconciliation and reporting.

from __future__ import annotations

from decimal import Decimal

# Currencies Stripe charges without a fractional unit.
ZERO_DECIMAL_CURRENCIES = {
    "bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga",
    "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf",
}


def minor_unit_exponent(currency: str) -> int:
    return 0 if currency.lower() in ZERO_DECIMAL_CURRENCIES else 2


def from_minor_units(amount: int | None, currency: str) -> Decimal | None:
    """4999 "aed" -> Decimal("49.99")."""
    if amount is None:
        return None
    exponent = minor_unit_exponent(currency)
    return (Decimal(int(amount)) / (Decimal(10) ** exponent)).quantize(
        Decimal(1).scaleb(-exponent)
    )


def format_minor_units(amount: int | None, currency: str) -> str | None:
    value = from_minor_units(amount, currency)
    return None if value is None else str(value)
