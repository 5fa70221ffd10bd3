#!/usr/bin/env python
"""
CLI for running and previewing import pipelines
Usage: python -m importer.cli --pipeline config/pipeline.yaml
"""
from __future__ import annotations

import argparse
import json
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

from importer.common.config_models import resolve_env
from importer.common.exceptions import ImporterError
from importer.common.logger import LogFormat, get_logger, init_logger
from importer.common.settings import load_settings
from importer.common.utils import load_yaml, parse_scalar, set_dotted
from importer.core.service import ImportPipelineService
from importer.core.stages import PipelineStage


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Run or preview an import pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m importer.cli --pipeline config/pipeline.yaml
  python -m importer.cli --pipeline config/pipeline.yaml --stage filter
  python -m importer.cli --pipeline config/pipeline.yaml --set read.options.delimiter=";"
  python -m importer.cli --list-plugins
        """
    )
    parser.add_argument(
        "--pipeline",
        default="config/pipeline.yaml",
        help="Path to pipeline configuration file (default: config/pipeline.yaml)"
    )
    parser.add_argument(
        "--stage",
        choices=[s.value for s in PipelineStage],
        help="Run only up to and including this stage (preview)"
    )
    parser.add_argument(
        "--dotenv",
        help="Path to .env file to load (optional)"
    )
    parser.add_argument(
        "--set",
        action="append",
        help="Override config with dotted.key=value (repeatable)"
    )
    parser.add_argument(
        "--validate",
        action="store_true",
        help="Validate the configuration against the plugin registries without running it"
    )
    parser.add_argument(
        "--list-plugins",
        action="store_true",
        help="List registered downloaders, readers, operators, transformers and resolvers"
    )
    parser.add_argument(
        "--log-level",
        choices=["user", "dev", "debug"],
        default="user",
        help="Logging verbosity: user (clean), dev (detailed), debug (very verbose)"
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output logs in JSON-Lines format"
    )
    return parser


def load_pipeline_section(path: Path, overrides: Optional[List[str]] = None) -> Dict[str, Any]:
    """Read the `pipeline:` section of a YAML file and apply --set overrides."""
    if not path.exists():
        raise ImporterError(f"Pipeline config not found: {path}")
    doc = load_yaml(path)
    if not isinstance(doc, dict) or "pipeline" not in doc:
        raise ImporterError(f"Missing 'pipeline' section in {path}")
    section = dict(doc["pipeline"] or {})
    for override in overrides or []:
        if "=" not in override:
            raise ImporterError(f"--set expects dotted.key=value, got: {override}")
        key, value = override.split("=", 1)
        set_dotted(section, key.strip(), parse_scalar(value))
    if "download" in section:
        section["download"] = resolve_env(section["download"])
    return section


def main(argv: Optional[List[str]] = None) -> int:
    t0 = time.perf_counter()
    args = build_parser().parse_args(argv)

    init_logger(args.log_level, LogFormat.JSON if args.json else LogFormat.TEXT)
    load_dotenv(args.dotenv) if args.dotenv else load_dotenv()
    log = get_logger()

    settings = load_settings()
    log.set_channels(settings.logging.channels)
    service = ImportPipelineService(settings)

    if args.list_plugins:
        catalogue = {
            "downloaders": service.get_available_downloader_schemes(),
            "readers": service.get_available_reader_types(),
            "operators": [op["name"] for op in service.get_available_filter_operators()],
            "transformers": [t["name"] for t in service.get_available_transformers()],
            "resolvers": [r["name"] for r in service.get_available_resolvers()],
        }
        print(yaml.safe_dump(catalogue, sort_keys=False))
        return 0

    try:
        log.info(f"Loading pipeline: {args.pipeline}")
        section = load_pipeline_section(Path(args.pipeline), args.set)
    except ImporterError as e:
        log.error(e.message)
        return 2

    if args.validate:
        errors = service.validate_config(section)
        if errors:
            for err in errors:
                log.error(err)
            log.error("Pipeline validation FAILED")
            return 1
        log.success("Pipeline validation SUCCESSFUL")
        return 0

    if args.stage:
        result = service.execute_to_stage(section, args.stage)
    else:
        result = service.process(section)

    summary = result.to_dict()
    if args.json:
        print(json.dumps(summary, default=str))
    else:
        log.info("========================================")
        log.info(f"Rows: {result.stats.total_rows} read, {result.processed_rows} processed "
                 f"({result.success_rate}%)")
        for stage, errors in result.row_errors.items():
            log.warning(f"{stage}: {len(errors)} rows with errors")
        log.info(f"Finished in {time.perf_counter() - t0:.2f}s")
        log.info("========================================")
    return 0 if result.success else 1


if __name__ == "__main__":
    sys.exit(main())
