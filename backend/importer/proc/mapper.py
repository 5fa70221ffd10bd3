from __future__ import annotations
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from importer.common.config_models import MappingConfig, MappingRule
from importer.common.logger import Category, get_logger
from importer.common.utils import NOT_FOUND, dig, set_dotted
from importer.plugins.api import Transformer
from importer.plugins.registry import TRANSFORMERS, Registry

log = get_logger()


class FieldExtractor:
    """
    Dot-path reads with `*` wildcards over lists ("images.*.url").

    A wildcard path yields a list of the values found (NOT_FOUND when none).
    """

    def extract(self, row: Any, path: str) -> Any:
        if "*" not in path.split("."):
            return dig(row, path)
        values = self._expand(row, path.split("."))
        return values if values else NOT_FOUND

    def _expand(self, node: Any, parts: Sequence[str]) -> List[Any]:
        if not parts:
            return [node]
        head, rest = parts[0], parts[1:]
        if head == "*":
            items = node.values() if isinstance(node, Mapping) else node if isinstance(node, (list, tuple)) else []
            out: List[Any] = []
            for item in items:
                out.extend(self._expand(item, rest))
            return out
        nxt = dig(node, head)
        return [] if nxt is NOT_FOUND else self._expand(nxt, rest)

    def has_field(self, row: Any, path: str) -> bool:
        return self.extract(row, path) is not NOT_FOUND


def _is_absent(value: Any) -> bool:
    return value is NOT_FOUND or value is None or value == "" or (isinstance(value, (list, tuple)) and not value)


def _assign(out: Dict[str, Any], target: str, value: Any) -> None:
    # dotted targets build nested output
    if "." in target:
        set_dotted(out, target, value)
    else:
        out[target] = value


class ValueMappingTable:
    """from -> to lookups: exact key first, then case-insensitive string key."""

    def __init__(self, table: Mapping[Any, Any]):
        self.table = dict(table)
        self.folded = {str(k).lower(): v for k, v in self.table.items() if isinstance(k, str)}

    def __bool__(self) -> bool:
        return bool(self.table)

    def lookup(self, value: Any) -> Tuple[bool, Any]:
        try:
            if value in self.table:
                return True, self.table[value]
        except TypeError:
            # unhashable values never match
            return False, None
        if isinstance(value, (str, int, float)) and not isinstance(value, bool):
            key = str(value).lower()
            if key in self.folded:
                return True, self.folded[key]
        return False, None


class ValueTransformer:
    """
    Applies one rule to one extracted value: transform, then the value
    mapping table (against the transformed value, then the raw value),
    then the empty-string fallback to the default.

    Returns (value, error message or None).
    """

    def apply(self, value: Any, rule: MappingRule, transformer: Transformer,
              table: ValueMappingTable) -> Tuple[Any, Optional[str]]:
        if isinstance(value, list) and table and transformer.name not in ("array_first", "array_join"):
            mapped_items = [table.lookup(v) for v in value]
            value = [to if hit else v for (hit, to), v in zip(mapped_items, value)]

        error = None
        try:
            out = transformer.transform(value, rule.format)
        except (ValueError, TypeError) as e:
            hit, mapped = table.lookup(value)
            if hit:
                return mapped, None
            error = f"Field '{rule.target_field}': {e}"
            out = transformer.fallback(rule.default_value)

        if table and error is None:
            hit, mapped = table.lookup(out)
            if not hit:
                hit, mapped = table.lookup(value)
            if hit:
                out = mapped

        if out == "" and rule.default_value is not None:
            out = rule.default_value
        return out, error


@dataclass
class MappingResult:
    mapped_data: List[Dict[str, Any]]
    errors: Dict[int, List[str]] = field(default_factory=dict)
    filter_stats: Dict[str, Any] = field(default_factory=dict)
    headers: List[str] = field(default_factory=list)
    processing_time: float = 0.0

    @property
    def mapped_rows(self) -> int:
        return len(self.mapped_data)

    @property
    def error_count(self) -> int:
        return sum(len(v) for v in self.errors.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mapped_rows": self.mapped_rows,
            "headers": self.headers,
            "errors": self.errors,
            "error_count": self.error_count,
            "filter_stats": self.filter_stats,
            "processing_time": self.processing_time,
        }


class DataMapperService:
    """
    Applies mapping rules to every row. A bad row never aborts the batch:
    missing required fields and failed transformations are recorded under
    the 0-based row index and the rule's default is used.
    """

    def __init__(self, registry: Registry[Transformer] = TRANSFORMERS,
                 extractor: Optional[FieldExtractor] = None,
                 value_transformer: Optional[ValueTransformer] = None):
        self.registry = registry
        self.extractor = extractor or FieldExtractor()
        self.value_transformer = value_transformer or ValueTransformer()

    @staticmethod
    def coerce_rules(rules: Iterable[MappingRule | Mapping[str, Any]]) -> List[MappingRule]:
        return MappingConfig(rules=[r.model_dump() if isinstance(r, MappingRule) else dict(r) for r in rules]).rules

    def map(
        self,
        rows: List[Any],
        rules: Iterable[MappingRule | Mapping[str, Any]],
        headers: Optional[List[str]] = None,
        filter_stats: Optional[Dict[str, Any]] = None,
    ) -> MappingResult:
        """
        Raises:
            FactoryError: If a rule names a transformer that is not registered
        """
        t0 = time.perf_counter()
        rules = self.coerce_rules(rules)
        compiled = [(rule, self.registry.get(rule.transformation), ValueMappingTable(rule.value_mapping))
                    for rule in rules]
        log.info("Starting data mapping", {"rows": len(rows), "rules": len(rules)}, category=Category.MAP)

        mapped: List[Dict[str, Any]] = []
        errors: Dict[int, List[str]] = {}
        for index, row in enumerate(rows):
            if isinstance(row, (list, tuple)):
                row = dict(zip(headers or [], row))
            out: Dict[str, Any] = {}
            for rule, transformer, table in compiled:
                value = self.extractor.extract(row, rule.source_field)
                if _is_absent(value):
                    if rule.is_required:
                        errors.setdefault(index, []).append(
                            f"Required field '{rule.source_field}' not found in data"
                        )
                        if rule.default_value is None:
                            continue
                    _assign(out, rule.target_field, rule.default_value)
                    continue

                value, error = self.value_transformer.apply(value, rule, transformer, table)
                if error:
                    errors.setdefault(index, []).append(error)
                _assign(out, rule.target_field, value)
            mapped.append(out)

        result = MappingResult(
            mapped_data=mapped,
            errors=errors,
            filter_stats=dict(filter_stats or {}),
            headers=[r.target_field for r in rules],
            processing_time=time.perf_counter() - t0,
        )
        if errors:
            log.warning(f"Mapping recorded errors on {len(errors)} rows", {"error_count": result.error_count},
                        category=Category.MAP)
        log.info("Data mapping completed", {"mapped_rows": result.mapped_rows}, category=Category.MAP)
        return result

    def get_transformer_options(self) -> Dict[str, str]:
        return {m["name"]: m["label"] for m in self.registry.metadata()}
