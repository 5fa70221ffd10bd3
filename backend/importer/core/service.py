"""
Import pipeline service: the entry point collaborators call.

Validates a configuration, runs it (fully or up to a stage) and exposes the
plugin catalogues used to populate configuration screens.
"""
from __future__ import annotations
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from importer.common.config_models import (
    SECTION_MODELS,
    DownloadConfig,
    FilterConfig,
    ImportPipelineConfig,
    MappingConfig,
    PrepareConfig,
    ReaderConfig,
    parse_sections,
)
from importer.common.cache import ImportCache
from importer.common.exceptions import ConfigurationError
from importer.common.logger import Category, get_logger
from importer.common.settings import ImportSettings
from importer.plugins.registry import DOWNLOADERS, OPERATORS, READERS, RESOLVERS, TRANSFORMERS, bootstrap_discovery
from importer.proc.filter import FilterValidator
from .orchestrator import PipelineOrchestrator
from .pipes import ResultWriter
from .results import ImportPipelineResult
from .stages import PipelineStage

__all__ = ["ImportPipelineService"]

log = get_logger()


class ImportPipelineService:
    def __init__(
        self,
        settings: Optional[ImportSettings] = None,
        cache: Optional[ImportCache] = None,
        orchestrator: Optional[PipelineOrchestrator] = None,
    ):
        bootstrap_discovery()
        self.settings = settings or ImportSettings()
        self.cache = cache or ImportCache.from_settings(self.settings.cache)
        self.orchestrator = orchestrator or PipelineOrchestrator(settings=self.settings)
        self.filter_validator = FilterValidator(OPERATORS)

    # ---------------- Execution ----------------
    def process(
        self,
        config: ImportPipelineConfig | Mapping[str, Any],
        writer: Optional[ResultWriter] = None,
        cancel_check: Optional[Callable[[], bool]] = None,
    ) -> ImportPipelineResult:
        """Validate and run every stage."""
        return self._run(config, None, writer, cancel_check)

    def execute_to_stage(
        self,
        config: ImportPipelineConfig | Mapping[str, Any],
        stage: PipelineStage | str | int,
        writer: Optional[ResultWriter] = None,
    ) -> ImportPipelineResult:
        """Validate and run the stage prefix ending at `stage` (preview)."""
        return self._run(config, PipelineStage.from_value(stage), writer, None)

    def _run(
        self,
        config: ImportPipelineConfig | Mapping[str, Any],
        target: Optional[PipelineStage],
        writer: Optional[ResultWriter],
        cancel_check: Optional[Callable[[], bool]],
    ) -> ImportPipelineResult:
        errors = self.validate_config(config)
        if errors:
            return self._invalid(errors, target)
        try:
            cfg = self._coerce(config)
        except ConfigurationError as e:
            return self._invalid([e.message], target)
        return self.orchestrator.run(cfg, target, cancel_check=cancel_check, writer=writer)

    @staticmethod
    def _invalid(errors: List[str], target: Optional[PipelineStage]) -> ImportPipelineResult:
        log.error("Pipeline configuration is invalid", {"errors": errors}, category=Category.PIPELINE)
        return ImportPipelineResult(
            errors=list(errors),
            success=False,
            target_stage=target.value if target else None,
        )

    @staticmethod
    def _coerce(config: ImportPipelineConfig | Mapping[str, Any]) -> ImportPipelineConfig:
        if isinstance(config, ImportPipelineConfig):
            return config
        return ImportPipelineConfig.from_mapping(config)

    # ---------------- Validation ----------------
    def validate_config(self, config: ImportPipelineConfig | Mapping[str, Any]) -> List[str]:
        """
        Collect every configuration problem; never raises.

        Each section is validated on its own, then the downloader scheme,
        reader type, filter rules, mapping transformers and the prepare
        resolver are checked against the registries.
        """
        if isinstance(config, ImportPipelineConfig):
            sections: Dict[str, Any] = {name: getattr(config, name) for name in SECTION_MODELS}
            errors: List[str] = []
        else:
            sections, errors = parse_sections(config)

        download: Optional[DownloadConfig] = sections.get("download")
        if download is not None and not DOWNLOADERS.has(download.scheme):
            errors.append(f"Unsupported downloader scheme: {download.scheme or '(none)'}")
        read: Optional[ReaderConfig] = sections.get("read")
        if read is not None and not READERS.has(read.type):
            errors.append(f"Unsupported reader type: {read.type}")

        filter_cfg: Optional[FilterConfig] = sections.get("filter")
        for index, rule in enumerate(filter_cfg.rules if filter_cfg else []):
            for problem in self.filter_validator.validate_rule(rule):
                errors.append(f"Filter rule {index}: {problem}")

        mapping: Optional[MappingConfig] = sections.get("map")
        for rule in mapping.rules if mapping else []:
            if not TRANSFORMERS.has(rule.transformation):
                errors.append(f"Mapping '{rule.target_field}': unknown transformer '{rule.transformation}'")

        prepare: Optional[PrepareConfig] = sections.get("prepare")
        resolver = (prepare.resolver if prepare else None) or self.settings.prepare.using
        if resolver and not RESOLVERS.has(resolver):
            errors.append(f"Unknown prepare resolver: {resolver}")
        for name in prepare.resolvers if prepare else []:
            if not RESOLVERS.has(name):
                errors.append(f"Unknown prepare resolver: {name}")

        if errors:
            log.dev("Configuration validation failed", {"errors": errors}, category=Category.PIPELINE)
        return errors

    # ---------------- Catalogues ----------------
    def get_feed_keys(self, config: ImportPipelineConfig | Mapping[str, Any]) -> List[Dict[str, Any]]:
        """
        Field paths present in the source rows, from a run up to the read
        stage. List items are flattened under `*` so every key can be used
        as a mapping source field. A source that cannot be read yields [].
        """
        result = self.execute_to_stage(config, PipelineStage.READ)
        if not result.success:
            log.warning("Feed keys unavailable", {"errors": result.errors}, category=Category.READ)
            return []
        values: Dict[str, List[str]] = {}
        for row in result.data:
            _collect_paths(row, "", values)
        keys = [_feed_key(key, found) for key, found in sorted(values.items())]
        log.dev("Feed keys extracted", {"count": len(keys)}, category=Category.READ)
        return keys

    def get_target_fields(self) -> List[Dict[str, Any]]:
        """Fields a mapping rule may target, grouped by category."""
        return self.cache.remember("target_fields", lambda: target_fields(self.settings.prepare.price_types))

    # ---------------- Plugin catalogues ----------------
    def get_available_downloader_schemes(self) -> List[str]:
        return self.cache.remember("downloader_schemes", DOWNLOADERS.available_types)

    def get_available_reader_types(self) -> List[str]:
        return self.cache.remember("reader_types", READERS.available_types)

    def get_available_filter_operators(self) -> List[Dict[str, Any]]:
        return self.cache.remember("filter_operators", OPERATORS.metadata)

    def get_available_transformers(self) -> List[Dict[str, Any]]:
        return self.cache.remember("transformers", TRANSFORMERS.metadata)

    def get_available_resolvers(self) -> List[Dict[str, Any]]:
        return self.cache.remember("resolvers", RESOLVERS.metadata)

    def clear_cache(self) -> None:
        for key in ("downloader_schemes", "reader_types", "filter_operators", "transformers", "resolvers",
                    "target_fields"):
            self.cache.forget(key)


MAX_VALUE_LENGTH = 100
MAX_PREVIEW_LENGTH = 50


def _collect_paths(data: Any, prefix: str, out: Dict[str, List[str]]) -> None:
    if isinstance(data, Mapping):
        for key, value in data.items():
            _collect_paths(value, f"{prefix}.{key}" if prefix else str(key), out)
    elif isinstance(data, list):
        for value in data:
            _collect_paths(value, f"{prefix}.*" if prefix else "*", out)
    else:
        text = "" if data is None else str(data)
        found = out.setdefault(prefix, [])
        if text not in found:
            found.append(text)


def _truncate(text: str, limit: int) -> str:
    return text[:limit] + "..." if len(text) > limit else text


def _feed_key(key: str, values: List[str]) -> Dict[str, Any]:
    unique = [_truncate(v, MAX_VALUE_LENGTH) for v in values]
    preview = _truncate(unique[0], MAX_PREVIEW_LENGTH) if unique else ""
    return {"key": key, "preview": preview, "display": f"{key} | {preview}", "unique_values": unique}


# (field, label, category, type)
_PRODUCT_FIELDS = [
    ("vin", "VIN", "Identity", "string"),
    ("stock_id", "Stock ID", "Identity", "string"),
    ("title", "Title", "Product", "string"),
    ("description", "Description", "Product", "string"),
    ("condition", "Condition", "Product", "string"),
    ("category", "Category", "Product", "string"),
    ("year", "Year", "Vehicle", "integer"),
    ("make", "Make", "Vehicle", "string"),
    ("model", "Model", "Vehicle", "string"),
    ("trim", "Trim", "Vehicle", "string"),
    ("body_style", "Body Style", "Vehicle", "string"),
    ("exterior_color", "Exterior Color", "Vehicle", "string"),
    ("interior_color", "Interior Color", "Vehicle", "string"),
    ("mileage_value", "Mileage Value", "Vehicle", "integer"),
    ("mileage_unit", "Mileage Unit", "Vehicle", "string"),
    ("fuel_type", "Fuel Type", "Vehicle", "string"),
    ("transmission", "Transmission", "Vehicle", "string"),
    ("drive_type", "Drive Type", "Vehicle", "string"),
    ("engine", "Engine", "Vehicle", "string"),
    ("doors", "Doors", "Vehicle", "integer"),
    ("seating_capacity", "Seating Capacity", "Vehicle", "integer"),
]


def target_fields(price_types: Iterable[str]) -> List[Dict[str, Any]]:
    """Product fields, one `<code>_price` field per price type, then media."""
    fields = [
        {"field": name, "label": label, "category": category, "description": f"{category} {label.lower()}",
         "type": kind}
        for name, label, category, kind in _PRODUCT_FIELDS
    ]
    for code in price_types:
        fields.append({
            "field": f"{code}_price",
            "label": f"{code.capitalize()} Price",
            "category": "Pricing",
            "description": f"Product {code} price",
            "type": "number",
        })
    fields.append({
        "field": "images",
        "label": "Images",
        "category": "Media",
        "description": "Product images and media files",
        "type": "array",
    })
    return fields
