# Engine entry points
from importer.core.stages import PipelineStage
from importer.core.orchestrator import PipelineOrchestrator
from importer.core.service import ImportPipelineService

__all__ = ["PipelineStage", "PipelineOrchestrator", "ImportPipelineService"]
