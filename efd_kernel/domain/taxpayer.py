"""Normalization and formatting of Brazilian taxpayer identifiers."""

import re

from efd_kernel.exceptions import InvalidTaxpayerIdError

CNPJ_LENGTH = 14
CPF_LENGTH = 11

_NON_DIGITS = re.compile(r"\D")


def digits_only(value: str | None) -> str:
    """Strip everything that is not a digit."""
    if not value:
        return ""
    return _NON_DIGITS.sub("", value)


def normalize_cnpj(raw: str | None) -> str:
    """
    Return the 14-digit CNPJ contained in ``raw``.

    Raises:
        InvalidTaxpayerIdError: Wrong length, or a single repeated digit
            (``00000000000000`` is how blank ids are padded in some exports).
    """
    digits = digits_only(raw)
    if len(digits) != CNPJ_LENGTH:
        raise InvalidTaxpayerIdError(raw or "", f"expected {CNPJ_LENGTH} digits, got {len(digits)}")
    if len(set(digits)) == 1:
        raise InvalidTaxpayerIdError(raw or "", "repeated digit placeholder")
    return digits


def format_cnpj(cnpj: str) -> str:
    """Format 14 digits as ``XX.XXX.XXX/XXXX-XX``."""
    d = digits_only(cnpj)
    if len(d) != CNPJ_LENGTH:
        return cnpj
    return f"{d[:2]}.{d[2:5]}.{d[5:8]}/{d[8:12]}-{d[12:]}"
