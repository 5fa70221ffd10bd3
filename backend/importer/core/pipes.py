"""
Stage pipes.

Each pipe reads the previous stage's output from the passable, runs its
service/plugin and writes its typed result back. A pipe that cannot
complete raises; the orchestrator records the failure and halts the chain.
"""
from __future__ import annotations
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

import requests

from importer.common.exceptions import StageError
from importer.common.logger import get_logger
from importer.common.settings import ImportSettings
from importer.plugins.api import Downloader, DownloadRequest, Reader
from importer.plugins.registry import DOWNLOADERS, READERS, Registry
from importer.proc.filter import DataFilterService
from importer.proc.images import ImagesPrepareService
from importer.proc.mapper import DataMapperService, MappingResult
from importer.proc.resolvers import PrepareService
from .passable import PipelinePassable, SaveResult
from .stages import PipelineStage

log = get_logger()


class ResultWriter(ABC):
    """Persists the prepared rows of a run (Save stage)."""
    target: str = "writer"

    @abstractmethod
    def write(self, rows: List[Dict[str, Any]], passable: PipelinePassable) -> int:
        """Write rows and return how many were saved."""


class Pipe(ABC):
    stage: PipelineStage

    @abstractmethod
    def handle(self, passable: PipelinePassable) -> PipelinePassable:
        ...

    def skip(self, passable: PipelinePassable, reason: str) -> PipelinePassable:
        log.stage_skipped(self.stage.label, reason)
        passable.context.setdefault("skipped", []).append(self.stage.value)
        return passable


class DownloadPipe(Pipe):
    stage = PipelineStage.DOWNLOAD

    def __init__(self, registry: Registry[Downloader] = DOWNLOADERS):
        self.registry = registry

    def handle(self, passable: PipelinePassable) -> PipelinePassable:
        cfg = passable.config.download
        downloader = self.registry.get(cfg.scheme)
        request = DownloadRequest(
            source=cfg.url,
            method=cfg.method.value,
            headers=dict(cfg.headers),
            body=cfg.body,
            options=dict(cfg.options),
            preferred_filename=cfg.filename,
        )
        passable.download_result = downloader.download(request)
        return passable


class ReadPipe(Pipe):
    stage = PipelineStage.READ

    def __init__(self, registry: Registry[Reader] = READERS):
        self.registry = registry

    def handle(self, passable: PipelinePassable) -> PipelinePassable:
        if passable.download_result is None:
            raise StageError(self.stage.value, "Read stage requires downloaded content")
        cfg = passable.config.read
        reader = self.registry.get(cfg.type)
        passable.read_result = reader.read(passable.download_result.contents, cfg.options)
        passable.free_download()
        return passable


class FilterPipe(Pipe):
    stage = PipelineStage.FILTER

    def __init__(self, service: Optional[DataFilterService] = None):
        self.service = service or DataFilterService()

    def handle(self, passable: PipelinePassable) -> PipelinePassable:
        if passable.read_result is None:
            raise StageError(self.stage.value, "Filter stage requires read rows")
        passable.filter_result = self.service.filter(passable.read_result.rows, passable.config.filter_rules)
        return passable


class MapPipe(Pipe):
    stage = PipelineStage.MAP

    def __init__(self, service: Optional[DataMapperService] = None):
        self.service = service or DataMapperService()

    def handle(self, passable: PipelinePassable) -> PipelinePassable:
        rows = passable.current_rows()
        headers = passable.read_result.headers if passable.read_result else []
        filter_stats = passable.filter_result.stats if passable.filter_result else {}
        cfg = passable.config.map

        if cfg is None or not cfg.rules:
            passable.mapping_result = MappingResult(
                mapped_data=list(rows), filter_stats=dict(filter_stats), headers=list(cfg.headers if cfg else headers)
            )
            return self.skip(passable, "no mapping rules; rows pass through")

        result = self.service.map(rows, cfg.rules, headers=cfg.headers or headers, filter_stats=filter_stats)
        if result.errors and passable.config.options.stop_on_error:
            raise StageError(self.stage.value, f"Mapping failed on {len(result.errors)} rows")
        passable.mapping_result = result
        return passable


class ImagesPreparePipe(Pipe):
    stage = PipelineStage.IMAGES_PREPARE

    def __init__(self, service: Optional[ImagesPrepareService] = None):
        self.service = service or ImagesPrepareService()

    def handle(self, passable: PipelinePassable) -> PipelinePassable:
        cfg = passable.config.images_prepare
        if cfg is None or not cfg.active:
            return self.skip(passable, "images prepare is not active")
        passable.images_result = self.service.prepare(passable.current_rows(), cfg)
        return passable


class PreparePipe(Pipe):
    stage = PipelineStage.PREPARE

    def __init__(self, service: Optional[PrepareService] = None):
        self.service = service or PrepareService()

    def handle(self, passable: PipelinePassable) -> PipelinePassable:
        result = self.service.prepare(passable.current_rows(), passable.config.prepare)
        if result.errors and passable.config.options.stop_on_error:
            raise StageError(self.stage.value, f"Prepare failed on {len(result.errors)} rows")
        passable.prepare_result = result
        return passable


class SavePipe(Pipe):
    """
    Writes through the run's writer (`passable.context["writer"]`) or the
    pipe's default. Zero rows write nothing.
    """
    stage = PipelineStage.SAVE

    def __init__(self, writer: Optional[ResultWriter] = None):
        self.writer = writer

    def handle(self, passable: PipelinePassable) -> PipelinePassable:
        rows = passable.current_rows()
        writer: Optional[ResultWriter] = passable.context.get("writer") or self.writer
        if not rows:
            passable.save_result = SaveResult(saved_rows=0, skipped=True)
            return self.skip(passable, "no rows to save")
        if writer is None:
            passable.save_result = SaveResult(saved_rows=0, skipped=True)
            return self.skip(passable, "no result writer configured")
        saved = writer.write(rows, passable)
        passable.save_result = SaveResult(saved_rows=saved, target=writer.target)
        return passable


def build_pipes(settings: Optional[ImportSettings] = None, writer: Optional[ResultWriter] = None,
                session_factory: Callable[[], requests.Session] = requests.Session) -> List[Pipe]:
    """Default pipe chain in stage order."""
    settings = settings or ImportSettings()
    images = ImagesPrepareService(
        session_factory=session_factory,
        max_workers=settings.images.max_workers,
        timeout=settings.images.request_timeout,
    )
    return [
        DownloadPipe(),
        ReadPipe(),
        FilterPipe(),
        MapPipe(),
        ImagesPreparePipe(images),
        PreparePipe(PrepareService(default_resolver=settings.prepare.using)),
        SavePipe(writer),
    ]
