"""
Orchestrator: ordered stage pipes with partial execution

Download -> Read -> Filter -> Map -> ImagesPrepare -> Prepare -> Save.
A target stage runs only the prefix of the chain up to and including it.
"""
from __future__ import annotations
import time
from typing import Any, Callable, Dict, List, Optional, Sequence

from importer.common.config_models import ImportPipelineConfig
from importer.common.exceptions import ExecutionCancelled, ImporterError
from importer.common.logger import get_logger
from importer.common.settings import ImportSettings
from .passable import PipelinePassable
from .pipes import Pipe, ResultWriter, build_pipes
from .results import ImportPipelineResult, ImportPipelineStats
from .stages import PipelineStage

__all__ = ["PipelineOrchestrator"]

log = get_logger()


class PipelineOrchestrator:
    def __init__(self, pipes: Optional[Sequence[Pipe]] = None, settings: Optional[ImportSettings] = None,
                 writer: Optional[ResultWriter] = None):
        self.settings = settings or ImportSettings()
        self.pipes: List[Pipe] = sorted(pipes or build_pipes(self.settings, writer), key=lambda p: p.stage.order)

    def pipes_for(self, target_stage: Optional[PipelineStage]) -> List[Pipe]:
        if target_stage is None:
            return list(self.pipes)
        return [p for p in self.pipes if target_stage.includes(p.stage)]

    def execute_all(self, config: ImportPipelineConfig, **kwargs: Any) -> ImportPipelineResult:
        return self.run(config, None, **kwargs)

    def execute_to_stage(self, config: ImportPipelineConfig, stage: PipelineStage | str,
                         **kwargs: Any) -> ImportPipelineResult:
        return self.run(config, PipelineStage.from_value(stage), **kwargs)

    def run(
        self,
        config: ImportPipelineConfig,
        target_stage: Optional[PipelineStage] = None,
        cancel_check: Optional[Callable[[], bool]] = None,
        writer: Optional[ResultWriter] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> ImportPipelineResult:
        """
        Run the pipe chain (or its prefix up to `target_stage`).

        A failing pipe halts the chain; the result reports `success=False`
        with the failing stage and message. Cancellation is checked before
        each pipe.
        """
        passable = PipelinePassable(
            config=config,
            target_stage=target_stage,
            cancel_check=cancel_check,
            context=dict(context or {}),
        )
        if writer is not None:
            passable.context["writer"] = writer

        log.pipeline_start(config.download.url, target_stage.value if target_stage else "all")

        for pipe in self.pipes_for(target_stage):
            stage = pipe.stage
            if passable.is_cancelled():
                cancelled = ExecutionCancelled(stage.value)
                passable.fail(stage, cancelled.message)
                passable.context["cancelled"] = True
                log.stage_skipped(stage.label, "execution cancelled")
                break

            log.stage_start(stage.label, {"order": stage.order, "rows": len(passable.current_rows())})
            t0 = time.perf_counter()
            try:
                passable = pipe.handle(passable)
            except ImporterError as e:
                self._record_failure(passable, stage, e.message, t0)
                break
            except Exception as e:
                # Plugin code outside the engine's error taxonomy
                self._record_failure(passable, stage, f"{type(e).__name__}: {e}", t0)
                break

            elapsed = time.perf_counter() - t0
            passable.complete_stage(stage, elapsed)
            log.stage_success(stage.label, elapsed, {"rows": len(passable.current_rows())})
            if passable.should_stop():
                break

        result = self.build_result(passable)
        if result.success:
            log.pipeline_complete(result.stats.processing_time, result.stats.to_dict())
        else:
            log.pipeline_failed("; ".join(result.errors), {"failed_stage": result.failed_stage})
        return result

    @staticmethod
    def _record_failure(passable: PipelinePassable, stage: PipelineStage, message: str, t0: float) -> None:
        passable.stage_timings[stage.value] = time.perf_counter() - t0
        passable.fail(stage, message)
        log.stage_failed(stage.label, message)

    @staticmethod
    def build_result(passable: PipelinePassable) -> ImportPipelineResult:
        read = passable.read_result
        filt = passable.filter_result
        mapping = passable.mapping_result
        prepare = passable.prepare_result
        save = passable.save_result

        row_errors: Dict[str, Dict[int, List[str]]] = {}
        if filt is not None and filt.errors:
            row_errors["filter"] = filt.errors
        if mapping is not None and mapping.errors:
            row_errors["map"] = mapping.errors
        if prepare is not None and prepare.errors:
            row_errors["prepare"] = prepare.errors

        stats = ImportPipelineStats(
            total_rows=read.total_rows if read else 0,
            filtered_rows=filt.filtered_rows if filt else 0,
            mapped_rows=mapping.mapped_rows if mapping else 0,
            prepared_rows=prepare.prepared_rows if prepare else 0,
            saved_rows=save.saved_rows if save else 0,
            processing_time=passable.elapsed(),
            stage_timings=dict(passable.stage_timings),
            memory_usage=dict(passable.memory_usage),
            error_count=len(passable.errors) + sum(len(v) for e in row_errors.values() for v in e.values()),
        )

        return ImportPipelineResult(
            download=passable.download_result.to_dict() if passable.download_result else None,
            read={"total_rows": read.total_rows, "headers": read.headers, "meta": read.meta} if read else None,
            filter=filt.to_dict() if filt else None,
            mapping=mapping.to_dict() if mapping else None,
            images=passable.images_result.to_dict() if passable.images_result else None,
            prepare=prepare.to_dict() if prepare else None,
            save=save.to_dict() if save else None,
            stats=stats,
            errors=list(passable.errors),
            success=not passable.failed,
            failed_stage=passable.failed_stage.value if passable.failed_stage else None,
            target_stage=passable.target_stage.value if passable.target_stage else None,
            cancelled=bool(passable.context.get("cancelled")),
            data=list(passable.current_rows()),
            row_errors=row_errors,
        )
