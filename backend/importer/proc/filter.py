from __future__ import annotations
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from importer.common.config_models import FilterConfig, FilterRule
from importer.common.exceptions import FilterError
from importer.common.logger import Category, get_logger
from importer.common.utils import NOT_FOUND, dig
from importer.plugins.api import FilterOperator
from importer.plugins.registry import OPERATORS, Registry
from .operators import NULL_OPERATORS, as_number, compile_pattern

log = get_logger()


class DotNotationValueExtractor:
    """Reads `a.b.c` paths from nested rows; missing segments give NOT_FOUND."""

    def extract(self, row: Mapping[str, Any], key: str) -> Any:
        return dig(row, key)

    def exists(self, row: Mapping[str, Any], key: str) -> bool:
        return dig(row, key) is not NOT_FOUND


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or (isinstance(value, (list, tuple, dict)) and not value)


class FilterValidator:
    """
    Checks rule shape before any row is evaluated.

    `validate_rule()` returns a list of messages (empty when valid) so
    callers can show every problem at once.
    """

    def __init__(self, registry: Registry[FilterOperator] = OPERATORS):
        self.registry = registry

    def validate_rule(self, rule: FilterRule | Mapping[str, Any]) -> List[str]:
        data = rule.model_dump() if isinstance(rule, FilterRule) else dict(rule)
        operator = str(data.get("operator") or "").strip()
        required = ["key", "operator"]
        if operator not in NULL_OPERATORS:
            required.append("value")

        errors = [f"Field '{f}' is required" for f in required if _is_empty(data.get(f))]
        if errors:
            return errors

        if not self.registry.has(operator):
            return [f"Unknown operator: {operator}"]

        op = self.registry.get(operator)
        for fname, checks in op.validation_rules.items():
            if fname not in data:
                continue
            errors.extend(self._check_field(fname, data[fname], checks, data.get("regex_flags")))
        return errors

    def validate_rules(self, rules: Iterable[FilterRule | Mapping[str, Any]]) -> Dict[str, List[str]]:
        out: Dict[str, List[str]] = {}
        for index, rule in enumerate(rules):
            errors = self.validate_rule(rule)
            if errors:
                out[f"rule_{index}"] = errors
        return out

    def is_valid(self, rule: FilterRule | Mapping[str, Any]) -> bool:
        return not self.validate_rule(rule)

    @staticmethod
    def _check_field(fname: str, value: Any, checks: Sequence[str], regex_flags: Optional[str]) -> List[str]:
        errors: List[str] = []
        for check in checks:
            name, _, arg = check.partition(":")
            if name == "required" and _is_empty(value):
                errors.append(f"Field '{fname}' is required")
            elif name == "string" and not isinstance(value, str):
                errors.append(f"Field '{fname}' must be a string")
            elif name == "array" and not isinstance(value, (list, tuple)):
                errors.append(f"Field '{fname}' must be an array")
            elif name == "array_size" and isinstance(value, (list, tuple)) and len(value) != int(arg):
                errors.append(f"Field '{fname}' must contain exactly {arg} items")
            elif name == "numeric" and as_number(value) is None:
                errors.append(f"Field '{fname}' must be numeric")
            elif name == "pattern" and isinstance(value, str):
                try:
                    compile_pattern(value, regex_flags)
                except FilterError as e:
                    errors.append(e.message)
        return errors


@dataclass
class FilterResult:
    filtered_data: List[Dict[str, Any]]
    total_rows: int
    filtered_rows: int
    excluded_rows: int
    rule_stats: List[Dict[str, Any]] = field(default_factory=list)
    errors: Dict[int, List[str]] = field(default_factory=dict)
    processing_time: float = 0.0

    @property
    def filter_efficiency(self) -> float:
        """Percent of rows excluded"""
        if self.total_rows == 0:
            return 0.0
        return round(self.excluded_rows / self.total_rows * 100, 2)

    @property
    def stats(self) -> Dict[str, int]:
        return {"total": self.total_rows, "passed": self.filtered_rows, "failed": self.excluded_rows}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_rows": self.total_rows,
            "filtered_rows": self.filtered_rows,
            "excluded_rows": self.excluded_rows,
            "filter_efficiency": self.filter_efficiency,
            "rule_stats": self.rule_stats,
            "stats": self.stats,
            "errors": self.errors,
            "processing_time": self.processing_time,
        }


class DataFilterService:
    """
    Keeps rows that satisfy every rule (AND).

    Non-matches never raise; malformed rules do (FilterError.invalid_rule).
    An evaluation error on one row (e.g. a value type the operator rejects)
    excludes that row and is recorded under its 0-based index.
    """

    def __init__(
        self,
        registry: Registry[FilterOperator] = OPERATORS,
        extractor: Optional[DotNotationValueExtractor] = None,
        validator: Optional[FilterValidator] = None,
    ):
        self.registry = registry
        self.extractor = extractor or DotNotationValueExtractor()
        self.validator = validator or FilterValidator(registry)

    @staticmethod
    def coerce_rules(rules: Iterable[FilterRule | Mapping[str, Any]]) -> List[FilterRule]:
        return FilterConfig(rules=[r.model_dump() if isinstance(r, FilterRule) else dict(r) for r in rules]).rules

    def filter(self, rows: List[Dict[str, Any]], rules: Iterable[FilterRule | Mapping[str, Any]]) -> FilterResult:
        t0 = time.perf_counter()
        rules = self.coerce_rules(rules)
        total = len(rows)
        log.info("Starting data filter operation", {"total_rows": total, "filter_rules_count": len(rules)},
                 category=Category.FILTER)

        if not rules:
            return FilterResult(
                filtered_data=list(rows), total_rows=total, filtered_rows=total, excluded_rows=0,
                processing_time=time.perf_counter() - t0,
            )

        problems = self.validator.validate_rules(rules)
        if problems:
            detail = "; ".join(f"{k}: {', '.join(v)}" for k, v in problems.items())
            raise FilterError.invalid_rule(detail)

        operators = [self.registry.get(r.operator) for r in rules]
        rule_stats = [
            {"key": r.key, "operator": r.operator, "value": r.value, "description": r.describe(),
             "passed": 0, "failed": 0}
            for r in rules
        ]
        kept: List[Dict[str, Any]] = []
        errors: Dict[int, List[str]] = {}

        for index, row in enumerate(rows):
            include = True
            for rule, op, stat in zip(rules, operators, rule_stats):
                value = self.extractor.extract(row, rule.key)
                try:
                    ok = op.apply(None if value is NOT_FOUND else value, rule.value, rule.operator_options())
                except FilterError as e:
                    ok = False
                    errors.setdefault(index, []).append(e.message)
                    log.warning("Filter evaluation failed for row", {"row_index": index, "error": e.message},
                                category=Category.FILTER)
                stat["passed" if ok else "failed"] += 1
                include = include and ok
            if include:
                kept.append(row)

        result = FilterResult(
            filtered_data=kept,
            total_rows=total,
            filtered_rows=len(kept),
            excluded_rows=total - len(kept),
            rule_stats=rule_stats,
            errors=errors,
            processing_time=time.perf_counter() - t0,
        )
        log.info("Data filter operation completed", {
            "total_rows": result.total_rows,
            "filtered_rows": result.filtered_rows,
            "excluded_rows": result.excluded_rows,
            "filter_efficiency": result.filter_efficiency,
        }, category=Category.FILTER)
        return result

    def get_available_operators(self) -> List[Dict[str, Any]]:
        return self.registry.metadata()

    def validate_rule(self, rule: FilterRule | Mapping[str, Any]) -> List[str]:
        return self.validator.validate_rule(rule)
