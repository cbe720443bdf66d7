"""
Payment request validation.

Before a record is created or the gateway is contacted, we verify:
  1. Amount is present, finite and positive
  2. Customer email is present and looks like an address
  3. Customer name is present (at least 2 characters)
  4. Currency, when given, is a 3-letter code

All failures are collected rather than stopping at the first, so the caller
gets a complete list back in one round trip.
"""

import math
import re
from dataclasses import dataclass, field
from typing import Optional

EMAIL_PATTERN = re.compile(r"\S+@\S+\.\S+")
CURRENCY_PATTERN = re.compile(r"^[A-Za-z]{3}$")
MIN_NAME_LENGTH = 2


@dataclass
class ValidationResult:
    """Result of validating a payment request."""

    valid: bool
    errors: list[str] = field(default_factory=list)


def check_payment_request(
    amount: Optional[float],
    customer_email: Optional[str],
    customer_name: Optional[str],
    currency: Optional[str] = None,
) -> ValidationResult:
    """
    Check whether a payment request can be created.

    Args:
        amount: Transaction amount in the major currency unit.
        customer_email: Payer's email address.
        customer_name: Payer's full name.
        currency: ISO 4217 code; None falls back to the configured default.

    Returns:
        ValidationResult with every problem found.
    """
    errors: list[str] = []

    if amount is None or isinstance(amount, bool) or not math.isfinite(amount) or amount <= 0:
        errors.append("Valid amount is required")

    if not customer_email or not EMAIL_PATTERN.search(customer_email):
        errors.append("Valid customer email is required")

    if not customer_name or len(customer_name.strip()) < MIN_NAME_LENGTH:
        errors.append("Customer name is required and must be at least 2 characters")

    if currency is not None and not CURRENCY_PATTERN.match(currency):
        errors.append("Currency must be a 3-letter ISO code")

    return ValidationResult(valid=not errors, errors=errors)
