import os
from datetime import datetime, time
from typing import Any, Dict

import pytest

# Keep external integrations quiet during tests
os.environ.setdefault("IMPORT_PIPELINES_DB_PATH", ":memory:")
os.environ.setdefault("IMPORT_PIPELINES_CACHE_URL", "")
os.environ.setdefault("CELERY_BROKER_URL", "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")

from importer.common.settings import ImportSettings  # noqa: E402
from importer.db.models import Frequency, Pipeline  # noqa: E402
from importer.db.store import PipelineStore  # noqa: E402
from importer.io.downloaders.base import BaseDownloader  # noqa: E402
from importer.plugins.api import DownloadRequest, DownloadResult  # noqa: E402
from importer.plugins.options import OptionDefinition  # noqa: E402
from importer.plugins.registry import DOWNLOADERS, bootstrap_discovery  # noqa: E402

# memory://<key> sources resolve to these payloads
MEMORY_SOURCES: Dict[str, bytes] = {}


class MemoryDownloader(BaseDownloader):
    """Serves bytes from MEMORY_SOURCES (or the `contents` option)."""
    name = "memory"

    option_definitions = {
        "contents": OptionDefinition("string", None, "Inline payload"),
    }

    def do_download(self, request: DownloadRequest, options: Dict[str, Any]) -> DownloadResult:
        if options["contents"] is not None:
            payload = options["contents"].encode("utf-8")
        else:
            payload = MEMORY_SOURCES[request.source.split("://", 1)[1]]
        return DownloadResult(success=True, contents=payload, filename="memory", file_size=len(payload))


CSV_INVENTORY = (
    "vin,make,model,year,price,status\n"
    "1HGCM82633A004352,Honda,Accord,2003,12500,active\n"
    "5YJSA1E26HF000001,Tesla,Model S,2017,abc,closed\n"
    "WBA3A5C51CF256651,BMW,328i,2012,\"$9,900\",pending\n"
)


@pytest.fixture(scope="session", autouse=True)
def plugins():
    """Populate the plugin registries once per session."""
    bootstrap_discovery()


@pytest.fixture
def memory_downloader():
    """Register the in-process downloader for the duration of a test."""
    DOWNLOADERS.register(MemoryDownloader)
    MEMORY_SOURCES.clear()
    yield MEMORY_SOURCES
    DOWNLOADERS.unregister(MemoryDownloader.name)
    MEMORY_SOURCES.clear()


@pytest.fixture
def settings():
    """Default engine settings."""
    return ImportSettings()


@pytest.fixture
def store():
    """In-memory DuckDB store."""
    s = PipelineStore.in_memory()
    yield s
    s.close()


@pytest.fixture
def csv_config():
    """Pipeline config reading CSV_INVENTORY from the memory downloader."""
    return {
        "download": {"url": "memory://inventory.csv"},
        "read": {"type": "csv", "options": {"delimiter": ","}},
        "filter": {"rules": [{"key": "status", "operator": "in", "value": ["active", "pending"]}]},
        "map": {"rules": [
            {"source_field": "vin", "target_field": "vin", "transformation": "upper"},
            {"source_field": "make", "target_field": "make"},
            {"source_field": "model", "target_field": "model"},
            {"source_field": "year", "target_field": "year", "transformation": "integer"},
            {"source_field": "price", "target_field": "asking_price", "transformation": "float",
             "default_value": 0.0},
        ]},
        "prepare": {"resolver": "title"},
    }


@pytest.fixture
def saved_pipeline(store, csv_config):
    """A daily pipeline persisted in the store."""
    return store.save_pipeline(Pipeline(
        name="Dealer inventory",
        organization_id=7,
        config=csv_config,
        frequency=Frequency.DAILY,
        start_time=time(9, 0),
        created_at=datetime(2024, 1, 1, 8, 0),
    ))
