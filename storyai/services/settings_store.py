"""
Persistence boundary for the single AI settings record.

The store is the source of truth: the generation service only caches a copy
and re-reads it before any read that must be fresh. Records are changed by
merging partial updates, never by wholesale replacement. Every failure is
raised as PersistenceError.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Protocol
from uuid import uuid4

import httpx
from pydantic import ValidationError

from storyai.core import config
from storyai.core.errors import PersistenceError
from storyai.schemas.settings import Settings

logger = logging.getLogger(__name__)

# never overwritten by an update
PROTECTED_FIELDS = ("id", "createdAt")


class SettingsStore(Protocol):
    async def get_settings(self) -> Settings:
        ...

    async def update_settings(self, settings_id: str, updates: Dict[str, Any]) -> Settings:
        """Merge camelCase `updates` into the record identified by settings_id."""
        ...


def _parse(record: Dict[str, Any]) -> Settings:
    try:
        return Settings.model_validate(record)
    except ValidationError as e:
        raise PersistenceError(f"Stored AI settings are invalid: {e}") from e


def _initial_record() -> Dict[str, Any]:
    return {
        "id": str(uuid4()),
        "availableModels": [],
        "createdAt": datetime.now(timezone.utc).isoformat(),
    }


class JsonFileSettingsStore:
    """Keeps the settings record in one JSON file, created on first read."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    async def get_settings(self) -> Settings:
        async with self._lock:
            record = await asyncio.to_thread(self._read)
            if record is None:
                record = _initial_record()
                logger.info("creating AI settings record %s at %s", record["id"], self._path)
                await asyncio.to_thread(self._write, record)
        return _parse(record)

    async def update_settings(self, settings_id: str, updates: Dict[str, Any]) -> Settings:
        async with self._lock:
            record = await asyncio.to_thread(self._read)
            if record is None or record.get("id") != settings_id:
                raise PersistenceError(f"AI settings {settings_id} not found")
            for key, value in updates.items():
                if key not in PROTECTED_FIELDS:
                    record[key] = value
            settings = _parse(record)
            await asyncio.to_thread(self._write, record)
        return settings

    def _read(self) -> Optional[Dict[str, Any]]:
        try:
            text = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise PersistenceError(f"Cannot read {self._path}: {e}") from e
        try:
            record = json.loads(text)
        except ValueError as e:
            raise PersistenceError(f"Corrupt settings file {self._path}: {e}") from e
        if not isinstance(record, dict):
            raise PersistenceError(f"Corrupt settings file {self._path}: expected an object")
        return record

    def _write(self, record: Dict[str, Any]) -> None:
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(record, indent=2), encoding="utf-8")
            tmp.replace(self._path)
        except OSError as e:
            raise PersistenceError(f"Cannot write {self._path}: {e}") from e


class HttpSettingsStore:
    """Talks to a backend exposing GET {base}/settings and PUT {base}/settings/{id}."""

    def __init__(self, base_url: str, timeout: float = 30.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = httpx.Timeout(timeout, connect=10.0)

    async def get_settings(self) -> Settings:
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                r = await client.get(f"{self._base_url}/settings")
                r.raise_for_status()
                data = r.json()
        except (httpx.HTTPError, ValueError) as e:
            raise PersistenceError(f"Settings API read failed: {e}") from e
        return _parse(data)

    async def update_settings(self, settings_id: str, updates: Dict[str, Any]) -> Settings:
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                r = await client.put(f"{self._base_url}/settings/{settings_id}", json=updates)
                r.raise_for_status()
                data = r.json()
        except (httpx.HTTPError, ValueError) as e:
            raise PersistenceError(f"Settings API write failed: {e}") from e
        return _parse(data)


def build_settings_store() -> SettingsStore:
    if config.SETTINGS_API_URL:
        return HttpSettingsStore(config.SETTINGS_API_URL)
    return JsonFileSettingsStore(config.SETTINGS_PATH)
