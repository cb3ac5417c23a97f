# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Persistence backends for engine mutations.

The engine hands every state change to a backend as a ``Mutation``. In-memory
state is committed before the backend is called, and a failing backend never
rolls it back: the error is logged and the caller carries on.
"""

import asyncio
import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

import aiofiles
from filelock import FileLock

from .types import Mutation, MutationKind

lib_logger = logging.getLogger("keypool_library")


class PersistenceBackend:
    """Interface for durable storage of engine mutations."""

    async def persist(self, mutation: Mutation) -> None:
        raise NotImplementedError


class NullPersistence(PersistenceBackend):
    """Keeps nothing. Used by tests and purely in-memory pools."""

    async def persist(self, mutation: Mutation) -> None:
        return None


async def safe_persist(backend: PersistenceBackend, mutation: Mutation) -> bool:
    """
    Hand a mutation to a backend without letting its failure escape.

    Returns:
        True if the backend accepted the mutation, False if it raised
    """
    try:
        await backend.persist(mutation)
        return True
    except Exception as e:
        lib_logger.error(
            f"Failed to persist {mutation.kind.value} mutation: {type(e).__name__}: {e}"
        )
        return False


class JsonFilePersistence(PersistenceBackend):
    """
    Persists engine state as a JSON snapshot file.

    The backend folds each mutation into its own copy of the state and
    rewrites the file atomically (temp file + rename) under a file lock so
    several processes can share the same snapshot path.

    Layout::

        {
          "schema_version": 1,
          "updated_at": "...",
          "credentials": {id: {"secret", "label", "enabled", "created_at", "daily_quota"}},
          "usage": {id: {day: {bucket: count}}},
          "aggregate": {day: {bucket: count}},
          "errors": {id: {"status", "timestamp"}},
          "cursor": -1,
          "cursor_seq": 0,
          "models": {model: {"category", "individualQuota", "dailyQuota"}},
          "category_quotas": {"proQuota", "flashQuota"}
        }
    """

    SCHEMA_VERSION = 1

    def __init__(self, file_path: Union[str, Path]):
        self.file_path = Path(file_path)
        self.file_lock = FileLock(f"{self.file_path}.lock")
        self._data: Optional[Dict[str, Any]] = None
        self._save_lock = asyncio.Lock()

    @staticmethod
    def empty_state() -> Dict[str, Any]:
        return {
            "schema_version": JsonFilePersistence.SCHEMA_VERSION,
            "credentials": {},
            "usage": {},
            "aggregate": {},
            "errors": {},
            "cursor": -1,
            "cursor_seq": 0,
            "models": {},
            "category_quotas": {"proQuota": None, "flashQuota": None},
        }

    async def load(self) -> Dict[str, Any]:
        """Read the snapshot, returning an empty state if missing or corrupt."""
        if not self.file_path.exists():
            lib_logger.info(f"No key pool snapshot at {self.file_path}, starting fresh")
            self._data = self.empty_state()
            return self._data
        try:
            async with aiofiles.open(self.file_path, "r") as f:
                content = await f.read()
            data = json.loads(content) if content else {}
        except (json.JSONDecodeError, OSError) as e:
            lib_logger.error(f"Failed to load key pool snapshot: {e}")
            data = {}
        state = self.empty_state()
        state.update(data)
        self._data = state
        return state

    async def persist(self, mutation: Mutation) -> None:
        if self._data is None:
            await self.load()
        handler = self._HANDLERS.get(mutation.kind)
        if handler is None:
            return
        async with self._save_lock:
            handler(self._data, mutation)
            await self._write()

    async def _write(self) -> None:
        self._data["updated_at"] = datetime.now(timezone.utc).isoformat()
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.file_path.with_suffix(self.file_path.suffix + ".tmp")
        with self.file_lock:
            async with aiofiles.open(tmp_path, "w") as f:
                await f.write(json.dumps(self._data, indent=2))
            os.replace(tmp_path, self.file_path)

    # =========================================================================
    # MUTATION HANDLERS
    # =========================================================================

    @staticmethod
    def _credential_added(data: Dict[str, Any], m: Mutation) -> None:
        data["credentials"][m.credential_id] = dict(m.payload)

    @staticmethod
    def _credential_removed(data: Dict[str, Any], m: Mutation) -> None:
        data["credentials"].pop(m.credential_id, None)
        data["usage"].pop(m.credential_id, None)
        data["errors"].pop(m.credential_id, None)

    @staticmethod
    def _credential_updated(data: Dict[str, Any], m: Mutation) -> None:
        cred = data["credentials"].get(m.credential_id)
        if cred is not None:
            cred.update(m.payload)

    @staticmethod
    def _usage_incremented(data: Dict[str, Any], m: Mutation) -> None:
        days = data["usage"].setdefault(m.credential_id, {})
        buckets = days.setdefault(m.payload["day"], {})
        buckets[m.payload["bucket"]] = m.payload["count"]
        aggregate = data["aggregate"].setdefault(m.payload["day"], {})
        aggregate[m.payload["bucket"]] = m.payload["aggregate"]

    @staticmethod
    def _error_recorded(data: Dict[str, Any], m: Mutation) -> None:
        data["errors"][m.credential_id] = dict(m.payload)

    @staticmethod
    def _error_cleared(data: Dict[str, Any], m: Mutation) -> None:
        data["errors"].pop(m.credential_id, None)

    @staticmethod
    def _cursor_advanced(data: Dict[str, Any], m: Mutation) -> None:
        seq = m.payload.get("seq", 0)
        if seq < data.get("cursor_seq", 0):
            return
        data["cursor"] = m.payload["cursor"]
        data["cursor_seq"] = seq

    @staticmethod
    def _model_config_set(data: Dict[str, Any], m: Mutation) -> None:
        data["models"][m.payload["model"]] = dict(m.payload["config"])

    @staticmethod
    def _model_config_deleted(data: Dict[str, Any], m: Mutation) -> None:
        data["models"].pop(m.payload["model"], None)

    @staticmethod
    def _category_quotas_set(data: Dict[str, Any], m: Mutation) -> None:
        data["category_quotas"] = dict(m.payload)

    _HANDLERS: Dict[MutationKind, Callable[[Dict[str, Any], Mutation], None]] = {
        MutationKind.CREDENTIAL_ADDED: _credential_added.__func__,
        MutationKind.CREDENTIAL_REMOVED: _credential_removed.__func__,
        MutationKind.CREDENTIAL_UPDATED: _credential_updated.__func__,
        MutationKind.USAGE_INCREMENTED: _usage_incremented.__func__,
        MutationKind.ERROR_RECORDED: _error_recorded.__func__,
        MutationKind.ERROR_CLEARED: _error_cleared.__func__,
        MutationKind.CURSOR_ADVANCED: _cursor_advanced.__func__,
        MutationKind.MODEL_CONFIG_SET: _model_config_set.__func__,
        MutationKind.MODEL_CONFIG_DELETED: _model_config_deleted.__func__,
        MutationKind.CATEGORY_QUOTAS_SET: _category_quotas_set.__func__,
    }
