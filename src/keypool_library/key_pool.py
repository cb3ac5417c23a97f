# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Key pool: credential set, round-robin selection and outcome accounting.

Callers ask for the next usable key with ``select_next``, make the upstream
call themselves, then report back with ``report_outcome``. Selection skips
keys excluded by the error tracker and, when the model is known, keys whose
quota is used up. A consuming selection advances the rotation cursor and
reserves one slot of quota until the outcome comes back; a read-only selection
does neither.
"""

import asyncio
import logging
import uuid
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from .error_tracker import ErrorTracker
from .errors import CredentialNotFoundError, DuplicateCredentialError
from .failure_logger import log_failure
from .persistence import NullPersistence, PersistenceBackend, safe_persist
from .quota_tracker import QuotaTracker
from .rotation import RotationCursor
from .types import (
    Credential,
    Mutation,
    MutationKind,
    Outcome,
    OutcomeKind,
    Reservation,
    validate_quota,
)
from .utils.credential_formatter import mask_secret

lib_logger = logging.getLogger("keypool_library")


def _new_credential_id() -> str:
    return uuid.uuid4().hex[:16]


class KeyPool:
    """
    Holds the credentials and decides which one serves the next call.

    One ``asyncio.Lock`` guards the credential set and the rotation cursor,
    so reading the cursor, scanning, advancing and reserving quota happen as
    a single step for concurrent callers.
    """

    def __init__(
        self,
        quota_tracker: QuotaTracker,
        error_tracker: ErrorTracker,
        cursor: Optional[RotationCursor] = None,
        persistence: Optional[PersistenceBackend] = None,
        id_factory: Optional[Callable[[], str]] = None,
    ):
        self.quota = quota_tracker
        self.errors = error_tracker
        self.cursor = cursor or RotationCursor()
        self._persistence = persistence or NullPersistence()
        self._id_factory = id_factory or _new_credential_id
        self._credentials: Dict[str, Credential] = {}
        self._lock = asyncio.Lock()
        self._warned_models: set = set()
        # (credential_id, model) -> handles of in-flight consuming selections
        self._reservations: Dict[Tuple[str, str], List[Reservation]] = {}
        # Orders cursor writes so a store can drop ones that arrive late
        self._cursor_seq = 0

    # =========================================================================
    # LOOKUPS
    # =========================================================================

    def __len__(self) -> int:
        return len(self._credentials)

    def __contains__(self, credential_id: str) -> bool:
        return credential_id in self._credentials

    def get(self, credential_id: str) -> Credential:
        try:
            return self._credentials[credential_id]
        except KeyError:
            raise CredentialNotFoundError(credential_id) from None

    def list(self) -> List[Credential]:
        return list(self._credentials.values())

    def _rotation_order(self) -> List[Credential]:
        return [cred for cred in self._credentials.values() if cred.enabled]

    # =========================================================================
    # SELECTION
    # =========================================================================

    async def select_next(
        self,
        exclude: Optional[Union[str, Credential]] = None,
        consuming: bool = True,
        model: Optional[str] = None,
    ) -> Optional[Credential]:
        """
        Pick the next usable credential in round-robin order.

        Args:
            exclude: Credential (or id) to skip, typically one that just
                failed mid-call and is being retried
            consuming: Advance the rotation cursor and reserve quota. Pass
                False for read-only selections so they do not take a turn.
            model: Model the call is for. When None, quota is not checked
                and is left to the caller.

        Returns:
            The selected credential, or None when no credential is usable
        """
        exclude_id = exclude.id if isinstance(exclude, Credential) else exclude
        selected: Optional[Credential] = None
        position: Optional[int] = None

        async with self._lock:
            candidates = self._rotation_order()
            for index in self.cursor.scan_order(len(candidates)):
                cred = candidates[index]
                if cred.id == exclude_id:
                    continue
                if self.errors.is_excluded(cred.id):
                    continue
                if model is not None:
                    decision = self.quota.check_quota(cred.id, model)
                    if not decision.allowed:
                        continue
                    if decision.unconfigured:
                        self._warn_unconfigured(model)
                selected = cred
                position = index
                break

            if selected is not None and consuming:
                self.cursor.advance_to(position)
                self._cursor_seq += 1
                cursor_seq = self._cursor_seq
                if model is not None:
                    reservation = await self.quota.reserve(selected.id, model)
                    if reservation is not None:
                        self._reservations.setdefault((selected.id, model), []).append(
                            reservation
                        )

        if selected is None:
            lib_logger.warning(
                f"No credential available (pool size {len(self._credentials)}, "
                f"model={model}, excluded={exclude_id})"
            )
            return None

        if consuming:
            lib_logger.debug(
                f"Selected credential {selected.id} ({mask_secret(selected.secret)}) "
                f"at position {position}"
            )
            await safe_persist(
                self._persistence,
                Mutation(
                    MutationKind.CURSOR_ADVANCED,
                    payload={"cursor": position, "seq": cursor_seq},
                ),
            )
        return selected

    def _warn_unconfigured(self, model: str) -> None:
        if model in self._warned_models:
            return
        self._warned_models.add(model)
        lib_logger.warning(
            f"Model {model} has no quota configuration; calls are not quota limited"
        )

    async def report_outcome(
        self,
        credential_id: str,
        model: Optional[str],
        outcome: Outcome,
        category: Optional[Any] = None,
        release_reservation: bool = True,
    ) -> None:
        """
        Account for a finished upstream call.

        Success counts usage and clears any stored error. An auth failure
        (401/403) excludes the key. Any other failure leaves the key's state
        alone so the caller can retry with ``select_next(exclude=...)``.

        Pass ``release_reservation=False`` for calls made with a key that was
        not obtained from a consuming ``select_next`` (e.g. an admin test).
        """
        reservation = None
        if model is not None and release_reservation:
            reservation = self._take_reservation(credential_id, model)

        cred = self._credentials.get(credential_id)
        if cred is None:
            await self.quota.release(reservation)
            lib_logger.info(
                f"Outcome {outcome.kind.value} reported for removed credential {credential_id}"
            )
            return

        if outcome.kind is OutcomeKind.SUCCESS:
            if model is not None:
                await self.quota.record_usage(
                    credential_id, model, category, reservation=reservation
                )
            await self.errors.clear_error(credential_id)
            return

        await self.quota.release(reservation)
        if outcome.kind is OutcomeKind.AUTH_FAILURE:
            await self.errors.record_error(credential_id, outcome.status)
            log_failure(cred.id, cred.secret, model, outcome.kind.value, outcome.status)
        else:
            lib_logger.info(
                f"Transient failure for credential {credential_id} "
                f"(status={outcome.status}); state unchanged"
            )
            log_failure(cred.id, cred.secret, model, outcome.kind.value, outcome.status)

    def _take_reservation(self, credential_id: str, model: str) -> Optional[Reservation]:
        """Pop the oldest of today's handles for this credential and model."""
        key = (credential_id, model)
        today = self.quota.clock.today()
        handles = [r for r in self._reservations.get(key, []) if r.day == today]
        reservation = handles.pop(0) if handles else None
        if handles:
            self._reservations[key] = handles
        else:
            self._reservations.pop(key, None)
        return reservation

    # =========================================================================
    # ADMINISTRATION
    # =========================================================================

    async def add(
        self,
        secret: str,
        label: Optional[str] = None,
        daily_quota: Optional[int] = None,
    ) -> Credential:
        """
        Add a credential.

        Args:
            daily_quota: Optional cap for this key per bucket per day, applied
                on top of the model's own per-key quota

        Raises:
            DuplicateCredentialError: if the secret is already in the pool
            InvalidQuotaError: if ``daily_quota`` is not a non-negative integer
        """
        daily_quota = validate_quota(daily_quota, "dailyQuota")
        async with self._lock:
            if any(c.secret == secret for c in self._credentials.values()):
                raise DuplicateCredentialError()
            credential_id = self._id_factory()
            while credential_id in self._credentials:
                credential_id = self._id_factory()
            cred = Credential(
                id=credential_id,
                secret=secret,
                label=label or "",
                daily_quota=daily_quota,
            )
            self._credentials[credential_id] = cred
            self.quota.set_key_limit(credential_id, daily_quota)

        lib_logger.info(f"Added credential {cred.id} ({mask_secret(secret)})")
        await safe_persist(
            self._persistence,
            Mutation(
                MutationKind.CREDENTIAL_ADDED,
                credential_id=cred.id,
                payload={
                    "secret": cred.secret,
                    "label": cred.label,
                    "enabled": cred.enabled,
                    "created_at": cred.created_at.isoformat(),
                    "daily_quota": cred.daily_quota,
                },
            ),
        )
        return cred

    async def remove(self, credential_id: str) -> None:
        """
        Delete a credential along with its usage and error state.

        Raises:
            CredentialNotFoundError: if the id does not exist
        """
        async with self._lock:
            cred = self._credentials.get(credential_id)
            if cred is None:
                raise CredentialNotFoundError(credential_id)
            if cred.enabled:
                self._shift_cursor_for(cred, removing=True)
            del self._credentials[credential_id]
            self.quota.forget(credential_id)
            for key in [k for k in self._reservations if k[0] == credential_id]:
                del self._reservations[key]
            self.errors.forget(credential_id)

        lib_logger.info(f"Removed credential {credential_id}")
        await safe_persist(
            self._persistence,
            Mutation(MutationKind.CREDENTIAL_REMOVED, credential_id=credential_id),
        )

    async def set_enabled(self, credential_id: str, enabled: bool) -> Credential:
        async with self._lock:
            cred = self._credentials.get(credential_id)
            if cred is None:
                raise CredentialNotFoundError(credential_id)
            if cred.enabled == enabled:
                return cred
            if enabled:
                cred.enabled = True
                self._shift_cursor_for(cred, removing=False)
            else:
                self._shift_cursor_for(cred, removing=True)
                cred.enabled = False

        lib_logger.info(
            f"Credential {credential_id} {'enabled' if enabled else 'disabled'}"
        )
        await safe_persist(
            self._persistence,
            Mutation(
                MutationKind.CREDENTIAL_UPDATED,
                credential_id=credential_id,
                payload={"enabled": enabled},
            ),
        )
        return cred

    async def set_daily_quota(
        self, credential_id: str, daily_quota: Optional[int]
    ) -> Credential:
        """Change (or with None, lift) a credential's own daily cap."""
        daily_quota = validate_quota(daily_quota, "dailyQuota")
        async with self._lock:
            cred = self._credentials.get(credential_id)
            if cred is None:
                raise CredentialNotFoundError(credential_id)
            cred.daily_quota = daily_quota
            self.quota.set_key_limit(credential_id, daily_quota)

        await safe_persist(
            self._persistence,
            Mutation(
                MutationKind.CREDENTIAL_UPDATED,
                credential_id=credential_id,
                payload={"daily_quota": daily_quota},
            ),
        )
        return cred

    async def clear_error(self, credential_id: str) -> bool:
        """
        Put an excluded credential back into rotation.

        Raises:
            CredentialNotFoundError: if the id does not exist
        """
        if credential_id not in self._credentials:
            raise CredentialNotFoundError(credential_id)
        return await self.errors.clear_error(credential_id)

    def _shift_cursor_for(self, cred: Credential, removing: bool) -> None:
        """
        Keep the cursor on the same credential when the rotation order
        gains or loses an entry at or before it. Must hold ``self._lock``;
        ``cred`` must currently be enabled.
        """
        order = self._rotation_order()
        index = order.index(cred)
        if index <= self.cursor.position:
            self.cursor.advance_to(self.cursor.position + (-1 if removing else 1))

    # =========================================================================
    # REPORTING AND RESTORE
    # =========================================================================

    def describe(self, models: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
        """
        Externally visible view of every credential. Never includes secrets.

        Args:
            models: Models to report remaining quota for (default: all
                configured models)
        """
        if models is None:
            models = list(self.quota.registry.all())
        models = list(models)
        result = []
        for cred in self._credentials.values():
            error = self.errors.get_error(cred.id)
            result.append(
                {
                    "id": cred.id,
                    "name": cred.label,
                    "enabled": cred.enabled,
                    "created_at": cred.created_at,
                    "daily_quota": cred.daily_quota,
                    "usage": self.quota.usage_snapshot(cred.id),
                    "remaining": {
                        model: self.quota.remaining_quota(cred.id, model)
                        for model in models
                    },
                    "error": (
                        {"status": error.status, "timestamp": error.timestamp}
                        if error
                        else None
                    ),
                }
            )
        return result

    def restore(
        self,
        credentials: Iterable[Credential],
        cursor: int = -1,
        cursor_seq: int = 0,
    ) -> None:
        """Replace the credential set and cursor with stored state."""
        self._cursor_seq = cursor_seq
        self._credentials = {cred.id: cred for cred in credentials}
        for cred in self._credentials.values():
            self.quota.set_key_limit(cred.id, cred.daily_quota)
        self.cursor.advance_to(cursor)
