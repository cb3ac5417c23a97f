# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Engine facade.

Wires one model registry, quota tracker, error tracker and key pool to a
shared clock and persistence backend, and rebuilds them from a stored
snapshot. Hosts hold one ``KeyPoolEngine`` per process.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

from .clock import DailyClock
from .error_tracker import ErrorTracker
from .key_pool import KeyPool
from .model_config import ModelRegistry
from .persistence import JsonFilePersistence, NullPersistence, PersistenceBackend
from .quota_tracker import QuotaTracker
from .rotation import RotationCursor
from .types import Credential, ErrorState

lib_logger = logging.getLogger("keypool_library")


def parse_timestamp(value: Any) -> datetime:
    """Read a timestamp written by a persistence backend."""
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


class KeyPoolEngine:
    def __init__(
        self,
        persistence: Optional[PersistenceBackend] = None,
        clock: Optional[DailyClock] = None,
        cursor: Optional[RotationCursor] = None,
    ):
        self.persistence = persistence or NullPersistence()
        self.clock = clock or DailyClock()
        self.registry = ModelRegistry(persistence=self.persistence)
        self.quota = QuotaTracker(self.registry, self.clock, self.persistence)
        self.errors = ErrorTracker(self.persistence)
        self.pool = KeyPool(self.quota, self.errors, cursor, self.persistence)

    @classmethod
    async def from_json_file(
        cls, file_path: Union[str, Path], clock: Optional[DailyClock] = None
    ) -> "KeyPoolEngine":
        """Build an engine persisted to, and restored from, a JSON snapshot."""
        backend = JsonFilePersistence(file_path)
        state = await backend.load()
        engine = cls(persistence=backend, clock=clock)
        engine.restore(state)
        return engine

    def restore(self, state: Mapping[str, Any]) -> None:
        """
        Load a stored snapshot into the engine.

        The snapshot uses the layout documented on ``JsonFilePersistence``;
        the SQL store builds the same shape.
        """
        credentials = []
        for credential_id, raw in state.get("credentials", {}).items():
            credentials.append(
                Credential(
                    id=credential_id,
                    secret=raw["secret"],
                    label=raw.get("label") or "",
                    enabled=bool(raw.get("enabled", True)),
                    created_at=parse_timestamp(raw["created_at"])
                    if raw.get("created_at")
                    else datetime.now().astimezone(),
                    daily_quota=raw.get("daily_quota"),
                )
            )

        errors: Dict[str, ErrorState] = {}
        for credential_id, raw in state.get("errors", {}).items():
            try:
                errors[credential_id] = ErrorState(
                    status=int(raw["status"]),
                    timestamp=parse_timestamp(raw["timestamp"]),
                )
            except (KeyError, TypeError, ValueError) as e:
                lib_logger.warning(
                    f"Skipping stored error state for {credential_id}: {e}"
                )

        self.registry.restore(
            state.get("models", {}), state.get("category_quotas") or None
        )
        self.quota.restore(state.get("usage", {}), state.get("aggregate") or None)
        self.errors.restore(errors)
        self.pool.restore(
            credentials,
            int(state.get("cursor", -1)),
            int(state.get("cursor_seq") or 0),
        )
        lib_logger.info(
            f"Restored {len(credentials)} credentials, {len(errors)} errored, "
            f"{len(self.registry.all())} model configs"
        )
