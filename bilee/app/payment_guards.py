from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from .errors import ReconciliationError, ValidationError

CENT = Decimal("0.01")
AMOUNT_TOLERANCE = Decimal("0.01")


def q_money(v: Decimal) -> Decimal:
    return v.quantize(CENT, rounding=ROUND_HALF_UP)


def parse_amount(raw) -> Decimal:
    # Go through str() so float payloads like 100.011 keep their printed value.
    if raw is None or isinstance(raw, bool):
        raise ValidationError("missing_fields", "amount is required")
    try:
        amount = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError) as ex:
        raise ValidationError("invalid_amount", f"amount is not a number: {raw!r}") from ex
    if not amount.is_finite() or amount < 0:
        raise ValidationError("invalid_amount", f"amount is not a valid payment amount: {raw!r}")
    return amount


def assert_amount_reconciles(
    session_total: Decimal,
    paid_amount: Decimal,
    detail: str = "payment amount does not match session total",
):
    # The difference is rounded to cents before the tolerance check, so sub-cent noise in the
    # PSP amount (e.g. 100.011) passes; effective acceptance is |difference| < 0.015 either way.
    if q_money(abs(session_total - paid_amount)) > AMOUNT_TOLERANCE:
        raise ReconciliationError("amount_mismatch", detail)
