"""
Prepare stage: optional business transformation of mapped rows.

One resolver is active per run (the pipeline's `prepare.resolver`, else the
deployment's `prepare.using` setting). No resolver means passthrough.
"""
from __future__ import annotations
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from importer.common.config_models import PrepareConfig
from importer.common.logger import Category, get_logger
from importer.plugins.api import Resolver
from importer.plugins.registry import RESOLVERS, Registry, register_resolver
from .transformers import SlugTransformer

log = get_logger()

_SLUG = SlugTransformer()

EXCLUDED_PRICE_FIELDS = ("asking_price", "special_price")


class PriceValueType:
    PRICE = "price"
    TEXT = "text"
    NO_PRICE = "no_price"


def detect_price_value_type(price: Any) -> str:
    if price is None or price == "":
        return PriceValueType.NO_PRICE
    if re.search(r"\d", str(price)):
        return PriceValueType.PRICE
    return PriceValueType.TEXT


def normalize_price(price: Any) -> float | int:
    """'$12,500' -> 12500, '12,5' -> 12.5, '1,299.99' -> 1299.99"""
    if isinstance(price, (int, float)) and not isinstance(price, bool):
        return price
    value = re.sub(r"[^0-9.,]", "", str(price))
    if value.count(",") == 1 and value.count(".") == 0 and len(value.split(",")[1]) != 3:
        value = value.replace(",", ".")
    value = value.replace(",", "")
    return float(value) if "." in value else int(value)


@register_resolver
class TitleResolver(Resolver):
    name = "title"
    description = "Build `title` from year, make and model when it is empty"

    def resolve(self, row: Dict[str, Any], config: Any) -> Dict[str, Any]:
        if row.get("title"):
            return row
        parts = [row.get("year"), row.get("make"), row.get("model")]
        if all(parts):
            row["title"] = " ".join(str(p) for p in parts)
            log.debug("Title generated for row", {"title": row["title"]}, category=Category.PREPARE)
        return row


@register_resolver
class PricingResolver(Resolver):
    """
    Collects `<code>_price` fields into a `pricing` list.

    Price codes come from `settings.price_types` when configured, otherwise
    every `*_price` key of the row (asking/special prices excluded).
    """
    name = "pricing"
    description = "Normalize *_price fields into a pricing list"

    def resolve(self, row: Dict[str, Any], config: Any) -> Dict[str, Any]:
        settings = getattr(config, "settings", {}) or {}
        codes = settings.get("price_types")
        if codes:
            fields = [f"{code}_price" for code in codes]
        else:
            fields = [k for k in row if k.endswith("_price")]
        fields = [f for f in fields if f not in EXCLUDED_PRICE_FIELDS]

        pricing: List[Dict[str, Any]] = []
        for fname in fields:
            if fname not in row:
                log.debug(f"Pricing field '{fname}' is missing in row", category=Category.PREPARE)
                continue
            raw = row[fname]
            value_type = detect_price_value_type(raw)
            value = normalize_price(raw) if value_type == PriceValueType.PRICE else raw
            pricing.append({"type": fname[: -len("_price")], "value_type": value_type, "value": value})
        row["pricing"] = pricing
        return row


@register_resolver
class StockIdResolver(Resolver):
    name = "stock_id"
    description = "Derive `stock_id` from the last 8 characters of `vin`"

    MIN_VIN_LENGTH = 7

    def resolve(self, row: Dict[str, Any], config: Any) -> Dict[str, Any]:
        if row.get("stock_id") or not row.get("vin"):
            return row
        vin = str(row["vin"]).strip()
        if len(vin) < self.MIN_VIN_LENGTH:
            log.warning("VIN too short to generate stock_id", {"vin": vin}, category=Category.PREPARE)
            return row
        row["stock_id"] = vin[-8:].upper()
        return row


@register_resolver
class VinResolver(Resolver):
    """
    Normalizes `vin` (trimmed, upper case) and, when it is empty, generates
    one from `stock_id`: the `VINAD` prefix followed by the stock id
    zero-padded to a 17 character VIN. Malformed VINs are kept and logged.
    """
    name = "vin"
    description = "Normalize `vin`, or generate it from `stock_id` when missing"

    VIN_LENGTH = 17
    PREFIX = "VINAD"
    VALID_VIN = re.compile(r"^[A-HJ-NPR-Z0-9]{17}$")

    @classmethod
    def generate(cls, stock_id: str) -> str:
        """
        Raises:
            ValueError: If the stock id is empty or too long to fit
        """
        body = re.sub(r"[^A-Za-z0-9]", "", stock_id).upper()
        room = cls.VIN_LENGTH - len(cls.PREFIX)
        if not body or len(body) > room:
            raise ValueError(f"stock_id must have 1 to {room} alphanumeric characters, got '{stock_id}'")
        return cls.PREFIX + body.rjust(room, "0")

    def resolve(self, row: Dict[str, Any], config: Any) -> Dict[str, Any]:
        vin = str(row.get("vin") or "").strip().upper()
        if vin:
            row["vin"] = vin
            if not self.VALID_VIN.match(vin):
                log.warning("Malformed VIN", {"vin": vin}, category=Category.PREPARE)
            return row
        if not row.get("stock_id"):
            return row
        try:
            row["vin"] = self.generate(str(row["stock_id"]))
        except ValueError as e:
            log.warning("Failed to generate VIN from stock_id", {"stock_id": row["stock_id"], "error": str(e)},
                        category=Category.PREPARE)
            return row
        log.debug("VIN generated from stock_id", {"stock_id": row["stock_id"], "vin": row["vin"]},
                  category=Category.PREPARE)
        return row


@register_resolver
class CategoryResolver(Resolver):
    """
    Sets `category_id` from a category value looked up in a configured table.

    Settings (`prepare.settings`):
        categories: {name: id} lookup table
        category_field: row field holding the category (default `category`)
        match_by: `slug` (default), `name` or `id`
        default_category_id: used when the value is empty or unknown (default 1)
    """
    name = "category"
    description = "Resolve `category_id` from a category name, slug or id"

    def resolve(self, row: Dict[str, Any], config: Any) -> Dict[str, Any]:
        current = row.get("category_id")
        if isinstance(current, int) and not isinstance(current, bool) and current > 0:
            return row

        settings = getattr(config, "settings", {}) or {}
        table: Dict[str, int] = settings.get("categories") or {}
        field_name = settings.get("category_field", "category")
        match_by = settings.get("match_by", "slug")
        default_id = settings.get("default_category_id", 1)

        value = row.get(field_name)
        category_id = self._lookup(str(value), table, match_by) if value not in (None, "") else None
        if category_id is None:
            log.warning("Category not resolved, using default", {
                "category_value": value, "match_by": match_by, "default_category_id": default_id,
            }, category=Category.PREPARE)
            category_id = default_id
        row["category_id"] = category_id
        return row

    @staticmethod
    def _lookup(value: str, table: Dict[str, int], match_by: str) -> Optional[int]:
        if match_by == "name":
            return table.get(value)
        if match_by == "id":
            wanted = value.strip()
            return next((cid for cid in table.values() if str(cid) == wanted), None)
        slug = _SLUG.transform(value)
        return next((cid for name, cid in table.items() if _SLUG.transform(name) == slug), None)


@register_resolver
class ChainResolver(Resolver):
    """Runs the resolvers named in `config.resolvers`, in order."""
    name = "chain"
    description = "Run several resolvers in sequence"

    def __init__(self, registry: Optional[Registry[Resolver]] = None):
        self.registry = registry or RESOLVERS

    def resolve(self, row: Dict[str, Any], config: Any) -> Dict[str, Any]:
        for name in getattr(config, "resolvers", []) or []:
            if name == self.name:
                continue
            row = self.registry.get(name).resolve(row, config)
        return row


@dataclass
class PrepareResult:
    prepared_data: List[Dict[str, Any]]
    total_rows: int
    prepared_rows: int
    skipped_rows: int
    resolver: Optional[str] = None
    errors: Dict[int, List[str]] = field(default_factory=dict)
    processing_time: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resolver": self.resolver,
            "total_rows": self.total_rows,
            "prepared_rows": self.prepared_rows,
            "skipped_rows": self.skipped_rows,
            "errors": self.errors,
            "processing_time": self.processing_time,
        }


class PrepareService:
    def __init__(self, default_resolver: Optional[str] = None, registry: Registry[Resolver] = RESOLVERS):
        self.default_resolver = default_resolver
        self.registry = registry

    def resolver_name(self, config: Optional[PrepareConfig]) -> Optional[str]:
        if config is not None and config.resolver:
            return config.resolver
        return self.default_resolver

    def prepare(self, rows: List[Dict[str, Any]], config: Optional[PrepareConfig] = None) -> PrepareResult:
        """
        Run the active resolver over every row. A row whose resolver call
        raises is recorded under its index and left out of the prepared set.

        Raises:
            FactoryError: If the configured resolver is not registered
        """
        t0 = time.perf_counter()
        config = config or PrepareConfig()
        name = self.resolver_name(config)
        if not name:
            log.dev("No resolver configured; rows pass through", category=Category.PREPARE)
            return PrepareResult(
                prepared_data=list(rows),
                total_rows=len(rows),
                prepared_rows=0,
                skipped_rows=len(rows),
                processing_time=time.perf_counter() - t0,
            )

        resolver = self.registry.get(name)
        prepared: List[Dict[str, Any]] = []
        errors: Dict[int, List[str]] = {}
        for index, row in enumerate(rows):
            try:
                prepared.append(resolver.resolve(dict(row), config))
            except Exception as e:
                errors[index] = [str(e)]
                log.warning("Row preparation failed", {"index": index, "error": str(e)}, category=Category.PREPARE)

        return PrepareResult(
            prepared_data=prepared,
            total_rows=len(rows),
            prepared_rows=len(prepared),
            skipped_rows=len(errors),
            resolver=name,
            errors=errors,
            processing_time=time.perf_counter() - t0,
        )
