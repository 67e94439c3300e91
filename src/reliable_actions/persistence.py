"""
Pluggable persistence for cache records and escalation entries.

Records are plain JSON-compatible dictionaries keyed by an opaque id. The
in-memory store is the default; the file store keeps a single JSON document
and survives a process restart.
"""

import asyncio
import copy
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict


logger = logging.getLogger(__name__)


class RecordStore(ABC):
    """
    Abstract base class for record persistence.

    Defines interface for storing and retrieving records
    across application restarts.
    """

    @abstractmethod
    async def save(self, key: str, record: Dict[str, Any]) -> None:
        """Save or overwrite a record."""
        pass

    @abstractmethod
    async def load_all(self) -> Dict[str, Dict[str, Any]]:
        """Load all records."""
        pass

    @abstractmethod
    async def remove(self, key: str) -> None:
        """Remove a record if present."""
        pass

    @abstractmethod
    async def clear(self) -> None:
        """Remove every record."""
        pass


class InMemoryRecordStore(RecordStore):
    """In-memory implementation of record store."""

    def __init__(self):
        self.records: Dict[str, Dict[str, Any]] = {}

    async def save(self, key: str, record: Dict[str, Any]) -> None:
        self.records[key] = copy.deepcopy(record)

    async def load_all(self) -> Dict[str, Dict[str, Any]]:
        return copy.deepcopy(self.records)

    async def remove(self, key: str) -> None:
        self.records.pop(key, None)

    async def clear(self) -> None:
        self.records.clear()


class FileRecordStore(RecordStore):
    """File-based implementation of record store."""

    def __init__(self, file_path: str):
        """
        Initialize file-based store.

        Args:
            file_path: Path to persistence file
        """
        self.file_path = file_path
        self.lock = asyncio.Lock()

    async def save(self, key: str, record: Dict[str, Any]) -> None:
        async with self.lock:
            records = await self._load_from_file()
            records[key] = record
            await self._save_to_file(records)

    async def load_all(self) -> Dict[str, Dict[str, Any]]:
        async with self.lock:
            return await self._load_from_file()

    async def remove(self, key: str) -> None:
        async with self.lock:
            records = await self._load_from_file()
            if records.pop(key, None) is not None:
                await self._save_to_file(records)

    async def clear(self) -> None:
        async with self.lock:
            await self._save_to_file({})

    async def _load_from_file(self) -> Dict[str, Dict[str, Any]]:
        """Load records from file."""
        try:
            with open(self.file_path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as e:
            logger.warning(f"Ignoring corrupt record file {self.file_path}: {e}")
            return {}

    async def _save_to_file(self, records: Dict[str, Dict[str, Any]]) -> None:
        """Save records to file."""
        with open(self.file_path, 'w', encoding='utf-8') as f:
            json.dump(records, f, indent=2, default=str)


__all__ = ["RecordStore", "InMemoryRecordStore", "FileRecordStore"]
