"""Key-value stores used for checkpoints, session state and exports."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Optional

from pages_worker.core import db
from pages_worker.core.config import Settings

logger = logging.getLogger(__name__)


class StateStore:
    """Minimal key-value contract shared by the file and database stores."""

    def save(self, key: str, value: Any) -> None:
        raise NotImplementedError

    def load(self, key: str) -> Optional[Any]:
        raise NotImplementedError


class JsonFileStore(StateStore):
    """Stores every key as ``<directory>/<key>.json``."""

    def __init__(self, directory: str) -> None:
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        if not key or "/" in key or key.startswith("."):
            raise ValueError(f"Invalid store key: {key!r}")
        return self.directory.joinpath(f"{key}.json")

    def save(self, key: str, value: Any) -> None:
        path = self._path(key)
        self.directory.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".json.tmp")
        with tmp_path.open("w", encoding="utf-8") as fh:
            json.dump(value, fh, ensure_ascii=False)
        os.replace(tmp_path, path)
        logger.debug("Saved %s to %s", key, path)

    def load(self, key: str) -> Optional[Any]:
        path = self._path(key)
        if not path.exists():
            return None
        with path.open("r", encoding="utf-8") as fh:
            return json.load(fh)


class PostgresStore(StateStore):
    def __init__(self) -> None:
        db.init_pool()
        db.ensure_schema()

    def save(self, key: str, value: Any) -> None:
        db.save_state(key, value)

    def load(self, key: str) -> Optional[Any]:
        return db.load_state(key)


def build_store(settings: Settings) -> StateStore:
    if settings.state_store == "postgres":
        return PostgresStore()
    return JsonFileStore(settings.state_dir)
