"""
Tests for the pipe chain: stage ordering, partial execution, failure halting
and cancellation.
"""

from typing import Any, Dict, List

import pytest

from importer.common.config_models import ImportPipelineConfig
from importer.common.exceptions import ConfigurationError
from importer.core.orchestrator import PipelineOrchestrator
from importer.core.passable import PipelinePassable
from importer.core.pipes import Pipe, ResultWriter, build_pipes
from importer.core.stages import PipelineStage

from conftest import CSV_INVENTORY


class ListWriter(ResultWriter):
    target = "memory"

    def __init__(self):
        self.batches: List[List[Dict[str, Any]]] = []

    def write(self, rows, passable):
        self.batches.append(list(rows))
        return len(rows)


class ExplodingMapPipe(Pipe):
    stage = PipelineStage.MAP

    def handle(self, passable: PipelinePassable) -> PipelinePassable:
        raise RuntimeError("boom")


@pytest.fixture
def config(memory_downloader, csv_config):
    """Validated config with the CSV payload in place."""
    memory_downloader["inventory.csv"] = CSV_INVENTORY.encode("utf-8")
    return ImportPipelineConfig.from_mapping(csv_config)


@pytest.fixture
def orchestrator(settings):
    """Orchestrator with the default pipe chain."""
    return PipelineOrchestrator(settings=settings)


# ============================================================================
# Stages
# ============================================================================


class TestPipelineStage:
    """Test stage ordering helpers."""

    def test_order(self):
        """Test stages are numbered 1..7 in chain order."""
        assert [s.order for s in PipelineStage] == [1, 2, 3, 4, 5, 6, 7]
        assert PipelineStage.SAVE.previous() == PipelineStage.PREPARE
        assert PipelineStage.SAVE.next() is None

    @pytest.mark.parametrize("value", ["images_prepare", "IMAGES-PREPARE", 5, PipelineStage.IMAGES_PREPARE])
    def test_from_value(self, value):
        """Test stage lookup by value, name or order."""
        assert PipelineStage.from_value(value) == PipelineStage.IMAGES_PREPARE

    def test_unknown_stage(self):
        """Test unknown stages raise ConfigurationError."""
        with pytest.raises(ConfigurationError, match="Unknown pipeline stage"):
            PipelineStage.from_value("publish")


# ============================================================================
# Orchestrator
# ============================================================================


class TestFullRun:
    """Test execute_all()."""

    def test_all_stages_produce_prepared_rows(self, orchestrator, config):
        """Test a full run over the CSV inventory."""
        result = orchestrator.execute_all(config)

        assert result.success is True
        assert result.stats.total_rows == 3
        assert result.stats.filtered_rows == 2
        assert result.stats.mapped_rows == 2
        assert result.processed_rows == 2
        assert result.success_rate == 66.67
        assert result.data[0] == {
            "vin": "1HGCM82633A004352",
            "make": "Honda",
            "model": "Accord",
            "year": 2003,
            "asking_price": 12500.0,
            "title": "2003 Honda Accord",
        }
        assert result.data[1]["asking_price"] == 9900.0
        assert set(result.stats.stage_timings) == {s.value for s in PipelineStage}

    def test_writer_receives_prepared_rows(self, orchestrator, config):
        """Test the Save stage writes through the run's writer."""
        writer = ListWriter()
        result = orchestrator.run(config, writer=writer)

        assert result.stats.saved_rows == 2
        assert result.save == {"saved_rows": 2, "target": "memory", "skipped": False}
        assert len(writer.batches) == 1

    def test_save_without_writer_is_skipped(self, orchestrator, config):
        """Test Save records a skip when no writer is configured."""
        result = orchestrator.execute_all(config)
        assert result.save["skipped"] is True
        assert result.stats.saved_rows == 0

    def test_inactive_images_stage_is_skipped(self, orchestrator, config):
        """Test images section stays empty when not active."""
        assert orchestrator.execute_all(config).images is None


class TestPartialRun:
    """Test execute_to_stage()."""

    def test_stops_after_filter(self, orchestrator, config):
        """Test later stage sections stay None and data holds the filtered rows."""
        result = orchestrator.execute_to_stage(config, "filter")

        assert result.success is True
        assert result.target_stage == "filter"
        assert result.filter["stats"] == {"total": 3, "passed": 2, "failed": 1}
        assert result.mapping is None
        assert result.prepare is None
        assert result.save is None
        assert [r["status"] for r in result.data] == ["active", "pending"]

    def test_download_only(self, orchestrator, config):
        """Test a download preview reports the payload summary."""
        result = orchestrator.execute_to_stage(config, PipelineStage.DOWNLOAD)
        assert result.download["file_size"] == len(CSV_INVENTORY)
        assert result.read is None
        assert result.data == []

    def test_pipes_for_is_a_prefix(self, orchestrator):
        """Test the selected pipes are the chain prefix."""
        stages = [p.stage for p in orchestrator.pipes_for(PipelineStage.MAP)]
        assert stages == [PipelineStage.DOWNLOAD, PipelineStage.READ, PipelineStage.FILTER, PipelineStage.MAP]


class TestFailures:
    """Test failure halting."""

    def test_reader_error_halts_chain(self, orchestrator, memory_downloader, csv_config):
        """Test a parse failure fails the read stage and nothing after it runs."""
        memory_downloader["inventory.csv"] = b"{broken"
        cfg = ImportPipelineConfig.from_mapping({**csv_config, "read": {"type": "json"}})

        result = orchestrator.execute_all(cfg)

        assert result.success is False
        assert result.failed_stage == "read"
        assert result.errors[0].startswith("Parsing failed for json reader")
        assert result.filter is None

    def test_unexpected_exception_is_reported(self, settings, config):
        """Test errors outside the engine taxonomy still fail the stage."""
        pipes = [p for p in build_pipes(settings) if p.stage != PipelineStage.MAP] + [ExplodingMapPipe()]
        result = PipelineOrchestrator(pipes=pipes).execute_all(config)

        assert result.failed_stage == "map"
        assert result.errors == ["RuntimeError: boom"]
        assert result.stats.filtered_rows == 2

    def test_stop_on_error_fails_map(self, orchestrator, memory_downloader, csv_config):
        """Test stop_on_error turns row errors into a stage failure."""
        memory_downloader["inventory.csv"] = b"vin,price,status\nA,abc,active\n"
        cfg = ImportPipelineConfig.from_mapping({**csv_config, "options": {"stop_on_error": True}})

        result = orchestrator.execute_all(cfg)

        assert result.failed_stage == "map"
        assert result.errors == ["Mapping failed on 1 rows"]

    def test_row_errors_do_not_fail_the_run(self, orchestrator, memory_downloader, csv_config):
        """Test per-row mapping errors are collected on a successful run."""
        memory_downloader["inventory.csv"] = b"vin,price,status\nA,abc,active\nB,5,active\n"
        result = orchestrator.execute_all(ImportPipelineConfig.from_mapping(csv_config))

        assert result.success is True
        assert list(result.row_errors["map"]) == [0]
        assert result.data[0]["asking_price"] == 0.0


class TestCancellation:
    """Test cancel_check handling."""

    def test_cancel_before_read(self, orchestrator, config):
        """Test cancellation stops the chain before the next stage."""
        calls = []

        def cancel_check():
            calls.append(1)
            return len(calls) > 1

        result = orchestrator.run(config, cancel_check=cancel_check)

        assert result.cancelled is True
        assert result.success is False
        assert result.failed_stage == "read"
        assert result.errors == ["Execution cancelled before read stage"]
        assert result.download is not None
        assert result.read is None
