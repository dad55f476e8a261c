"""
OEE Monitor - Fallback Snapshot Loading

A snapshot is a YAML mapping of collection name to a list of documents. It
seeds the fallback store with known-good reference data at startup.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog
import yaml

logger = structlog.get_logger()

DEFAULT_SNAPSHOT_PATH = Path(__file__).with_name("fallback_snapshot.yaml")


def load_snapshot(path: Optional[str] = None) -> Dict[str, List[Dict[str, Any]]]:
    """Read a snapshot file; the packaged snapshot is used when no path is given."""
    snapshot_path = Path(path) if path else DEFAULT_SNAPSHOT_PATH
    with snapshot_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}

    if not isinstance(data, dict):
        raise ValueError(f"Snapshot {snapshot_path} must map collection names to document lists")

    snapshot = {}
    for collection, documents in data.items():
        if not isinstance(documents, list):
            raise ValueError(f"Snapshot collection {collection!r} must be a list")
        snapshot[str(collection)] = [dict(document) for document in documents]

    logger.debug(
        "Snapshot loaded",
        path=str(snapshot_path),
        collections=sorted(snapshot),
        documents=sum(len(docs) for docs in snapshot.values())
    )
    return snapshot
