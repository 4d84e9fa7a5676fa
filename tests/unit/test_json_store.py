"""Unit tests for the JSON-file persistence store."""

from __future__ import annotations

import json

import pytest

from pacekeeper.integration.json_store import JsonFileStore


class TestJsonFileStore:
    @pytest.mark.asyncio
    async def test_missing_key_loads_empty(self, file_store: JsonFileStore) -> None:
        assert await file_store.load("pending") == []

    @pytest.mark.asyncio
    async def test_save_then_load(self, file_store: JsonFileStore) -> None:
        records = [{"category": "connect", "target": "https://www.linkedin.com/in/a"}]
        await file_store.save("pending", records)

        assert await file_store.load("pending") == records
        assert file_store.path_for("pending").name == "pending.json"

    @pytest.mark.asyncio
    async def test_append_adds_to_existing(self, file_store: JsonFileStore) -> None:
        await file_store.append("processed", {"n": 1})
        await file_store.append("processed", {"n": 2})
        assert await file_store.load("processed") == [{"n": 1}, {"n": 2}]

    @pytest.mark.asyncio
    async def test_corrupt_file_loads_empty(self, file_store: JsonFileStore, caplog) -> None:
        path = file_store.path_for("session")
        path.parent.mkdir(parents=True)
        path.write_text("{not json", encoding="utf-8")

        assert await file_store.load("session") == []
        assert any("Corrupt store file" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_non_list_payload_loads_empty(self, file_store: JsonFileStore) -> None:
        path = file_store.path_for("budget")
        path.parent.mkdir(parents=True)
        path.write_text(json.dumps({"category": "connect"}), encoding="utf-8")

        assert await file_store.load("budget") == []

    @pytest.mark.asyncio
    async def test_save_leaves_no_temp_files(self, file_store: JsonFileStore) -> None:
        await file_store.save("pending", [{"a": 1}])
        await file_store.save("pending", [{"a": 2}])

        files = sorted(p.name for p in file_store.path_for("pending").parent.iterdir())
        assert files == ["pending.json"]

    @pytest.mark.parametrize("key", ["../escape", "a/b", "", ".hidden"])
    def test_rejects_unsafe_keys(self, file_store: JsonFileStore, key: str) -> None:
        with pytest.raises(ValueError):
            file_store.path_for(key)
