"""Field value normalization for EFD records."""

from datetime import date
from decimal import Decimal, InvalidOperation

ZERO = Decimal("0")


def parse_amount(value: str | None) -> Decimal:
    """
    Parse an EFD numeric field (comma decimal separator).

    ``""`` and ``None`` are zero.  A dot is only accepted as a thousands
    separator when a comma is also present (``1.500,00``).

    Raises:
        ValueError: ``value`` is not a number.
    """
    if value is None:
        return ZERO
    text = value.strip()
    if not text:
        return ZERO
    if "," in text:
        text = text.replace(".", "").replace(",", ".")
    try:
        amount = Decimal(text)
    except InvalidOperation:
        raise ValueError(f"not a number: {value!r}") from None
    if not amount.is_finite():
        raise ValueError(f"not a finite number: {value!r}")
    return amount


def parse_ledger_date(value: str) -> date:
    """
    Parse ``DDMMYYYY``.

    Raises:
        ValueError: wrong length or an impossible date.
    """
    text = value.strip()
    if len(text) != 8 or not text.isdigit():
        raise ValueError(f"expected DDMMYYYY, got {value!r}")
    return date(int(text[4:]), int(text[2:4]), int(text[:2]))


def is_ledger_date(value: str) -> bool:
    try:
        parse_ledger_date(value)
    except ValueError:
        return False
    return True
