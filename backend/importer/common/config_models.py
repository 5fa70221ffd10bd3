"""
Pydantic models for import pipeline configuration

Provides type-safe, validated configuration models for:
- Download request (source URL, scheme override, headers, body, options)
- Reader selection and parsing options
- Filter rules
- Field mapping rules (value-mapping tables normalized once at load time)
- Images prepare and prepare (resolver) settings
- Pipeline runtime options
"""
from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Type
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from importer.common.exceptions import ConfigurationError
from importer.common.utils import resolve_placeholders


# ============================================================================
# Enums
# ============================================================================

class ImageDownloadMode(str, Enum):
    """Which products get their images fetched"""
    ALL = "all"
    NEW_PRODUCTS_ONLY = "new_products_only"
    PRODUCTS_WITHOUT_IMAGES = "products_without_images"


class HttpMethod(str, Enum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"
    HEAD = "HEAD"


# ============================================================================
# Stage Configuration Models
# ============================================================================

class DownloadConfig(BaseModel):
    """Source descriptor"""
    url: str = Field(..., description="Source URL (scheme selects the downloader)")
    type: Optional[str] = Field(default=None, description="Explicit downloader type, overrides the URL scheme")
    method: HttpMethod = Field(default=HttpMethod.GET)
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[Any] = Field(default=None, description="Request body for http(s) sources")
    filename: Optional[str] = Field(default=None, description="Preferred filename for the download")
    options: Dict[str, Any] = Field(default_factory=dict, description="Unified downloader options bag")

    @field_validator("method", mode="before")
    @classmethod
    def upper_method(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v

    @property
    def scheme(self) -> str:
        if self.type:
            return self.type.strip().lower()
        return (urlparse(self.url).scheme or "").lower()


class ReaderConfig(BaseModel):
    """Reader selection"""
    type: str = Field(..., description="Reader type (csv, json, xml, yaml)")
    options: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("type")
    @classmethod
    def lower_type(cls, v: str) -> str:
        return v.strip().lower()


class FilterRule(BaseModel):
    """One predicate: dot-path key, operator name, comparison value"""
    key: str = Field(default="", description="Dot-path into a row")
    operator: str = Field(default="")
    value: Any = Field(default=None)
    description: Optional[str] = Field(default=None)
    case_sensitive: bool = Field(default=False)
    regex_flags: Optional[str] = Field(default=None)
    options: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("key", "operator", mode="before")
    @classmethod
    def none_to_empty(cls, v: Any) -> Any:
        return "" if v is None else v

    def operator_options(self) -> Dict[str, Any]:
        """Rule-level options plus the first-class case/regex settings"""
        opts = dict(self.options)
        opts.setdefault("case_sensitive", self.case_sensitive)
        if self.regex_flags:
            opts.setdefault("regex_flags", self.regex_flags)
        return opts

    def describe(self) -> str:
        value = ",".join(map(str, self.value)) if isinstance(self.value, list) else self.value
        return self.description or f"Filter by {self.key} {self.operator} {value}"


class FilterConfig(BaseModel):
    rules: List[FilterRule] = Field(default_factory=list)

    @field_validator("rules", mode="before")
    @classmethod
    def accept_field_key(cls, v: Any) -> Any:
        # Stored rules may name the dot path `field`
        if isinstance(v, list):
            return [
                {**r, "key": r.get("key") or r.get("field")} if isinstance(r, Mapping) and "field" in r else r
                for r in v
            ]
        return v


class MappingRule(BaseModel):
    """Source field -> target field with optional transformation and value table"""
    source_field: str = Field(...)
    target_field: str = Field(...)
    transformation: str = Field(default="none")
    is_required: bool = Field(default=False)
    default_value: Any = Field(default=None)
    format: Optional[str] = Field(default=None)
    value_mapping: Dict[Any, Any] = Field(default_factory=dict)

    @staticmethod
    def normalize_keys(raw: Mapping[str, Any]) -> Dict[str, Any]:
        """Accept both the stored (`transformer`, `required`) and model key names."""
        data = dict(raw)
        if "transformer" in data and "transformation" not in data:
            data["transformation"] = data.pop("transformer")
        if "required" in data and "is_required" not in data:
            data["is_required"] = data.pop("required")
        return data

    @field_validator("transformation", mode="before")
    @classmethod
    def default_transformation(cls, v: Any) -> Any:
        return "none" if v in (None, "") else v

    @field_validator("value_mapping", mode="before")
    @classmethod
    def normalize_value_mapping(cls, v: Any) -> Dict[Any, Any]:
        """[{from, to}, ...] or {from: to} -> {from: to}, in declaration order"""
        if not v:
            return {}
        if isinstance(v, Mapping):
            return dict(v)
        table: Dict[Any, Any] = {}
        for entry in v:
            if isinstance(entry, Mapping) and "from" in entry:
                table[entry["from"]] = entry.get("to")
            else:
                raise ValueError(f"value_mapping entries need 'from' and 'to': {entry!r}")
        return table


class MappingConfig(BaseModel):
    rules: List[MappingRule] = Field(default_factory=list)
    headers: List[str] = Field(default_factory=list)

    @field_validator("rules", mode="before")
    @classmethod
    def coerce_rules(cls, v: Any) -> Any:
        if isinstance(v, list):
            return [MappingRule.normalize_keys(r) if isinstance(r, Mapping) else r for r in v]
        return v


class ImagesPrepareConfig(BaseModel):
    active: bool = Field(default=False)
    images_key: str = Field(default="images")
    image_separator: str = Field(default=",")
    image_indexes_to_skip: List[int] = Field(default_factory=list)
    download_mode: ImageDownloadMode = Field(default=ImageDownloadMode.ALL)
    fetch_metadata: bool = Field(default=False)
    max_workers: Optional[int] = Field(default=None, ge=1)
    previous_metadata: Dict[str, Dict[str, Any]] = Field(
        default_factory=dict,
        description="Known metadata per image URL from earlier runs (drives keep/replace)",
    )


class PrepareConfig(BaseModel):
    resolver: Optional[str] = Field(default=None, description="Resolver for this pipeline")
    resolvers: List[str] = Field(default_factory=list, description="Resolvers run by the chain resolver")
    target_id: Optional[int] = Field(default=None)
    settings: Dict[str, Any] = Field(default_factory=dict, description="Free-form resolver settings")


class PipelineOptions(BaseModel):
    """Runtime options"""
    stop_on_error: bool = Field(default=False, description="Fail the Map/Prepare stage on any row error")


# ============================================================================
# Main Pipeline Configuration Model
# ============================================================================

class ImportPipelineConfig(BaseModel):
    """Complete configuration snapshot handed to the orchestrator"""
    download: DownloadConfig
    read: ReaderConfig
    filter: Optional[FilterConfig] = Field(default=None)
    map: Optional[MappingConfig] = Field(default=None)
    images_prepare: Optional[ImagesPrepareConfig] = Field(default=None)
    prepare: Optional[PrepareConfig] = Field(default=None)
    options: PipelineOptions = Field(default_factory=PipelineOptions)

    pipeline_id: Optional[int] = Field(default=None)
    organization_id: Optional[int] = Field(default=None)
    target_id: Optional[int] = Field(default=None)

    @property
    def filter_rules(self) -> List[FilterRule]:
        return self.filter.rules if self.filter else []

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], **ids: Any) -> "ImportPipelineConfig":
        """
        Build a validated config from a plain mapping (stored pipeline config
        or the `pipeline:` section of a YAML document).

        Raises:
            ConfigurationError: If a section is missing or invalid
        """
        sections, errors = parse_sections(data)
        if errors:
            raise ConfigurationError("; ".join(errors), problems=errors)
        fields: Dict[str, Any] = {k: data[k] for k in ("pipeline_id", "organization_id", "target_id") if k in data}
        fields.update(sections)
        fields.update({k: v for k, v in ids.items() if v is not None})
        try:
            return cls(**fields)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid pipeline configuration: {e}") from e


SECTION_MODELS: Dict[str, Type[BaseModel]] = {
    "download": DownloadConfig,
    "read": ReaderConfig,
    "filter": FilterConfig,
    "map": MappingConfig,
    "images_prepare": ImagesPrepareConfig,
    "prepare": PrepareConfig,
    "options": PipelineOptions,
}


def _describe(section: str, error: ValidationError) -> str:
    problems = ", ".join(
        f"{'.'.join(str(p) for p in (section, *err['loc']))}: {err['msg']}" for err in error.errors()
    )
    return f"Invalid pipeline configuration: {problems}"


def parse_sections(data: Mapping[str, Any]) -> Tuple[Dict[str, BaseModel], List[str]]:
    """
    Validate every section of a raw configuration on its own.

    Returns the sections that validated and the problems found in the
    others, so one pass reports everything wrong with the configuration.
    """
    errors: List[str] = []
    missing = set()
    download = data.get("download")
    if not download or (isinstance(download, Mapping) and not download.get("url")):
        errors.append("Download URL is required")
        missing.add("download")
    read = data.get("read")
    if not read or (isinstance(read, Mapping) and not read.get("type")):
        errors.append("Reader type is required")
        missing.add("read")

    sections: Dict[str, BaseModel] = {}
    for name, model in SECTION_MODELS.items():
        raw = data.get(name)
        if raw is None or name in missing:
            continue
        try:
            sections[name] = model.model_validate(raw)
        except ValidationError as e:
            errors.append(_describe(name, e))
    return sections, errors


def resolve_env(obj: Any) -> Any:
    if isinstance(obj, str):
        return resolve_placeholders(obj)
    if isinstance(obj, dict):
        return {k: resolve_env(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [resolve_env(v) for v in obj]
    return obj


def load_pipeline_yaml_string(text: str) -> ImportPipelineConfig:
    """Parse YAML text with a top-level `pipeline:` section."""
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML configuration: {e}") from e
    if not isinstance(data, dict) or "pipeline" not in data:
        raise ConfigurationError("Missing 'pipeline' section in configuration")

    section = dict(data["pipeline"] or {})
    # Credentials live in the environment; ${VAR} in the source descriptor is expanded here
    if "download" in section:
        section["download"] = resolve_env(section["download"])
    return ImportPipelineConfig.from_mapping(section)


def load_pipeline_yaml(yaml_path: Path) -> ImportPipelineConfig:
    """
    Load and validate a pipeline configuration from a YAML file

    Raises:
        ConfigurationError: If the file is missing or the configuration is invalid
    """
    if not yaml_path.exists():
        raise ConfigurationError(f"Configuration file not found: {yaml_path}")
    return load_pipeline_yaml_string(yaml_path.read_text(encoding="utf-8"))
