"""JSON-file persistence store.

Each key maps to ``<base_dir>/<key>.json`` holding a JSON array of records.
A missing, empty or corrupt file reads as an empty collection; writes go to
a temporary file that is renamed over the target so a crash never leaves a
half-written collection behind.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import tempfile
from pathlib import Path

logger = logging.getLogger(__name__)

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


class JsonFileStore:
    """Persistence store backed by one JSON file per key."""

    def __init__(self, base_dir: str | Path) -> None:
        self._base_dir = Path(base_dir)

    def path_for(self, key: str) -> Path:
        if not _KEY_PATTERN.match(key) or key.startswith("."):
            raise ValueError(f"Invalid store key: {key!r}")
        return self._base_dir / f"{key}.json"

    def _read(self, path: Path) -> list[dict]:
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []

        if not text.strip():
            return []

        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            logger.error("Corrupt store file %s, treating as empty: %s", path, exc)
            return []

        if not isinstance(data, list):
            logger.error("Store file %s does not hold a list, treating as empty", path)
            return []
        return data

    def _write(self, path: Path, records: list[dict]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(records, handle, indent=2, default=str)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    async def load(self, key: str) -> list[dict]:
        return await asyncio.to_thread(self._read, self.path_for(key))

    async def save(self, key: str, records: list[dict]) -> None:
        await asyncio.to_thread(self._write, self.path_for(key), list(records))

    async def append(self, key: str, record: dict) -> None:
        records = await self.load(key)
        records.append(record)
        await self.save(key, records)
