"""
Fiscal-code classification of item lines.

Contract:
    ``ClassificationRuleTable.classify`` is pure, total and deterministic.
    Every (record type, fiscal code) pair yields either a category or an
    explicit ignore decision carrying the reason; nothing falls through.

The table is compiled once from ``FiscalCodeTableDef`` (YAML data), so fiscal
codes are adjusted without touching parser control flow.
"""

from __future__ import annotations

from bisect import bisect_right
from dataclasses import dataclass

from efd_config.schema import FiscalCodeTableDef
from efd_ingestion.domain.types import RowCategory
from efd_kernel.exceptions import ConfigurationError

CLASSIFIABLE_CATEGORIES = frozenset({RowCategory.USAGE_CONSUMPTION, RowCategory.FIXED_ASSET})

UNCLASSIFIED_RECORD_TYPE = "record_type_not_classified"


@dataclass(frozen=True)
class ClassificationDecision:
    """Outcome of classifying one item line."""

    category: RowCategory | None
    reason: str

    @property
    def ignored(self) -> bool:
        return self.category is None


class ClassificationRuleTable:
    """Compiled fiscal-code -> category lookup."""

    def __init__(
        self,
        record_types: frozenset[str],
        codes: dict[str, RowCategory],
        ranges: tuple[tuple[str, str, RowCategory], ...] = (),
        ignore_reason: str = "resale",
    ):
        self._record_types = record_types
        self._codes = dict(codes)
        self._ranges = tuple(sorted(ranges))
        self._range_starts = [low for low, _, _ in self._ranges]
        self._ignore = ClassificationDecision(None, ignore_reason)
        self._outside = ClassificationDecision(None, UNCLASSIFIED_RECORD_TYPE)
        self._check_disjoint()

    @classmethod
    def from_def(cls, table: FiscalCodeTableDef) -> ClassificationRuleTable:
        """
        Compile a table definition.

        Raises:
            ConfigurationError: unknown category, or a code claimed by two
                categories.
        """
        codes: dict[str, RowCategory] = {}
        ranges: list[tuple[str, str, RowCategory]] = []
        for rule in table.rules:
            try:
                category = RowCategory(rule.category)
            except ValueError:
                raise ConfigurationError("rules.category", f"unknown category {rule.category!r}") from None
            if category not in CLASSIFIABLE_CATEGORIES:
                raise ConfigurationError("rules.category", f"{category.value} is not an item-line category")
            for code in rule.codes:
                previous = codes.setdefault(code, category)
                if previous is not category:
                    raise ConfigurationError(
                        "rules.codes", f"{code} mapped to both {previous.value} and {category.value}"
                    )
            ranges.extend((low, high, category) for low, high in rule.ranges)
        return cls(
            record_types=frozenset(table.record_types),
            codes=codes,
            ranges=tuple(ranges),
            ignore_reason=table.ignore_reason,
        )

    @property
    def record_types(self) -> frozenset[str]:
        return self._record_types

    def classify(self, record_type: str, fiscal_code: str) -> ClassificationDecision:
        if record_type not in self._record_types:
            return self._outside
        code = fiscal_code.strip()
        category = self._codes.get(code)
        if category is None:
            category = self._range_category(code)
        if category is None:
            return self._ignore
        return ClassificationDecision(category, f"fiscal_code:{code}")

    def _range_category(self, code: str) -> RowCategory | None:
        i = bisect_right(self._range_starts, code) - 1
        if i >= 0:
            low, high, category = self._ranges[i]
            if low <= code <= high:
                return category
        return None

    def _check_disjoint(self) -> None:
        for (_, high, _), (low, _, _) in zip(self._ranges, self._ranges[1:]):
            if low <= high:
                raise ConfigurationError("rules.ranges", f"range starting at {low} overlaps another range")
        for code, category in self._codes.items():
            ranged = self._range_category(code)
            if ranged is not None and ranged is not category:
                raise ConfigurationError(
                    "rules.codes", f"{code} mapped to both {category.value} and {ranged.value}"
                )
