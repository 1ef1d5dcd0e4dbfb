"""
Fee calculation for gig purchases and recurring plans.

Pure functions over Decimal amounts, rounded to two places with
half-even rounding at each step.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_EVEN, InvalidOperation
from typing import Union

from carepro.core.config import (
    GATEWAY_FEE_CAP,
    GATEWAY_FEE_RATE,
    MAX_VISITS_PER_WEEK,
    MIN_VISITS_PER_WEEK,
    SERVICE_CHARGE_RATE,
    WEEKS_PER_MONTH,
    ServiceType,
)
from carepro.core.exceptions import ValidationError

CENTS = Decimal("0.01")

Amount = Union[Decimal, int, str]


@dataclass(frozen=True)
class FeeBreakdown:
    """Charges making up the amount a client pays for one period."""
    base_price: Decimal
    service_type: str
    frequency_per_week: int
    order_fee: Decimal
    service_charge: Decimal
    gateway_fee: Decimal
    total_amount: Decimal

    def to_dict(self) -> dict:
        return {
            "base_price": self.base_price,
            "frequency_per_week": self.frequency_per_week,
            "order_fee": self.order_fee,
            "service_charge": self.service_charge,
            "gateway_fee": self.gateway_fee,
            "total_amount": self.total_amount,
        }


def _round(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_EVEN)


def to_amount(value: Amount) -> Decimal:
    """Coerce an input amount to Decimal, rejecting floats and garbage."""
    if isinstance(value, float):
        raise ValidationError("Amounts must be given as Decimal, int or str, not float")
    try:
        return Decimal(value)
    except (InvalidOperation, TypeError):
        raise ValidationError(f"Invalid amount: {value!r}")


def calculate_order_fee(base_price: Amount, service_type: str, frequency_per_week: int) -> Decimal:
    """
    Price of the visits in one period before fees.

    one-time: the base price; weekly: base x visits; monthly: base x visits x 4.
    """
    base = to_amount(base_price)
    errors = []
    if base < 0:
        errors.append("Base price cannot be negative")
    if not MIN_VISITS_PER_WEEK <= frequency_per_week <= MAX_VISITS_PER_WEEK:
        errors.append(f"Frequency per week must be between {MIN_VISITS_PER_WEEK} and {MAX_VISITS_PER_WEEK}")
    try:
        kind = ServiceType(service_type)
    except ValueError:
        errors.append(f"Unknown service type: {service_type}")
        kind = None
    if errors:
        raise ValidationError("Invalid fee calculation input", errors=errors)

    if kind == ServiceType.ONE_TIME:
        return _round(base)
    if kind == ServiceType.WEEKLY:
        return _round(base * frequency_per_week)
    return _round(base * frequency_per_week * WEEKS_PER_MONTH)


def calculate_service_charge(order_fee: Decimal) -> Decimal:
    return _round(order_fee * SERVICE_CHARGE_RATE)


def calculate_gateway_fee(amount: Decimal) -> Decimal:
    """Gateway processing fee on ``amount``, capped."""
    return min(_round(amount * GATEWAY_FEE_RATE), GATEWAY_FEE_CAP)


def calculate_fees(base_price: Amount, service_type: str, frequency_per_week: int = 1) -> FeeBreakdown:
    """Full breakdown: order fee, 10% service charge, capped gateway fee and total."""
    order_fee = calculate_order_fee(base_price, service_type, frequency_per_week)
    service_charge = calculate_service_charge(order_fee)
    gateway_fee = calculate_gateway_fee(order_fee + service_charge)

    return FeeBreakdown(
        base_price=_round(to_amount(base_price)),
        service_type=ServiceType(service_type).value,
        frequency_per_week=frequency_per_week,
        order_fee=order_fee,
        service_charge=service_charge,
        gateway_fee=gateway_fee,
        total_amount=order_fee + service_charge + gateway_fee,
    )
