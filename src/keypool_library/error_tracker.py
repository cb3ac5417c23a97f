# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from .persistence import NullPersistence, PersistenceBackend, safe_persist
from .types import AUTH_FAILURE_STATUSES, ErrorState, Mutation, MutationKind, utcnow

lib_logger = logging.getLogger("keypool_library")


class ErrorTracker:
    """
    Remembers the last authentication failure seen for each credential.

    Only 401 and 403 mark a key as bad. Rate limiting, server errors and
    timeouts are transient and never exclude a key. An excluded key stays
    out of rotation until its error is cleared by an admin or overwritten by
    a successful call.
    """

    def __init__(
        self,
        persistence: Optional[PersistenceBackend] = None,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self._errors: Dict[str, ErrorState] = {}
        self._persistence = persistence or NullPersistence()
        self._now = now or utcnow
        self._lock = asyncio.Lock()

    async def record_error(self, credential_id: str, http_status: int) -> bool:
        """
        Store an auth failure, replacing any earlier one.

        Returns:
            True if the status was recorded, False for statuses that do not
            indicate a bad credential
        """
        if http_status not in AUTH_FAILURE_STATUSES:
            lib_logger.debug(
                f"Ignoring HTTP {http_status} for credential {credential_id}: transient"
            )
            return False

        state = ErrorState(status=http_status, timestamp=self._now())
        async with self._lock:
            self._errors[credential_id] = state
        lib_logger.warning(
            f"Credential {credential_id} excluded after HTTP {http_status}"
        )
        await safe_persist(
            self._persistence,
            Mutation(
                MutationKind.ERROR_RECORDED,
                credential_id=credential_id,
                payload={
                    "status": state.status,
                    "timestamp": state.timestamp.isoformat(),
                },
            ),
        )
        return True

    async def clear_error(self, credential_id: str) -> bool:
        """
        Remove a credential's error state. Clearing a clean key is a no-op.

        Returns:
            True if an error was present
        """
        async with self._lock:
            removed = self._errors.pop(credential_id, None)
        if removed is None:
            return False
        lib_logger.info(f"Cleared error state for credential {credential_id}")
        await safe_persist(
            self._persistence,
            Mutation(MutationKind.ERROR_CLEARED, credential_id=credential_id),
        )
        return True

    def is_excluded(self, credential_id: str) -> bool:
        return credential_id in self._errors

    def get_error(self, credential_id: str) -> Optional[ErrorState]:
        return self._errors.get(credential_id)

    def list_errored(self) -> List[Tuple[str, int, datetime]]:
        return [
            (credential_id, state.status, state.timestamp)
            for credential_id, state in self._errors.items()
        ]

    def forget(self, credential_id: str) -> None:
        self._errors.pop(credential_id, None)

    def restore(self, errors: Mapping[str, ErrorState]) -> None:
        self._errors = {
            credential_id: state
            for credential_id, state in errors.items()
            if state.status in AUTH_FAILURE_STATUSES
        }
