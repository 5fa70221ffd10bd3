from __future__ import annotations
from enum import Enum
from typing import List, Optional

from importer.common.exceptions import ConfigurationError


class PipelineStage(str, Enum):
    """Pipe order is fixed; `order` (1..7) defines the partial-run prefix."""
    DOWNLOAD = "download"
    READ = "read"
    FILTER = "filter"
    MAP = "map"
    IMAGES_PREPARE = "images_prepare"
    PREPARE = "prepare"
    SAVE = "save"

    @classmethod
    def ordered(cls) -> List["PipelineStage"]:
        return list(cls)

    @property
    def order(self) -> int:
        return PipelineStage.ordered().index(self) + 1

    @property
    def label(self) -> str:
        return _LABELS[self][0]

    @property
    def description(self) -> str:
        return _LABELS[self][1]

    def previous(self) -> Optional["PipelineStage"]:
        stages = PipelineStage.ordered()
        idx = self.order - 1
        return stages[idx - 1] if idx > 0 else None

    def next(self) -> Optional["PipelineStage"]:
        stages = PipelineStage.ordered()
        return stages[self.order] if self.order < len(stages) else None

    def includes(self, other: "PipelineStage") -> bool:
        """True when `other` runs in a partial execution targeting this stage."""
        return other.order <= self.order

    @classmethod
    def from_value(cls, value: "PipelineStage | str | int") -> "PipelineStage":
        """Accepts a member, its value or name (any case, `-` or `_`), or its order."""
        if isinstance(value, cls):
            return value
        if isinstance(value, int) and not isinstance(value, bool):
            stages = cls.ordered()
            if 1 <= value <= len(stages):
                return stages[value - 1]
        else:
            key = str(value or "").strip().lower().replace("-", "_").replace(" ", "_")
            for stage in cls:
                if key in (stage.value, stage.name.lower()):
                    return stage
        valid = ", ".join(s.value for s in cls)
        raise ConfigurationError(f"Unknown pipeline stage: '{value}'. Valid stages: {valid}")


_LABELS = {
    PipelineStage.DOWNLOAD: ("Download", "Fetch the raw source content"),
    PipelineStage.READ: ("Read", "Parse raw content into rows"),
    PipelineStage.FILTER: ("Filter", "Keep rows matching every filter rule"),
    PipelineStage.MAP: ("Map", "Apply field mapping rules and transformers"),
    PipelineStage.IMAGES_PREPARE: ("Images Prepare", "Normalize image lists and fetch image metadata"),
    PipelineStage.PREPARE: ("Prepare", "Apply the configured business resolver"),
    PipelineStage.SAVE: ("Save", "Persist the prepared rows"),
}
