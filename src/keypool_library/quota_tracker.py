# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Per-key and per-category daily quota accounting.

Usage is counted per (credential, bucket, day) and per (bucket, day). Only
records whose day equals ``clock.today()`` take part in quota checks, so a new
day starts from zero without any reset job while older records stay around
for reporting.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Any, Dict, Mapping, Optional, Tuple

from .clock import DailyClock
from .model_config import ModelRegistry, usage_bucket
from .persistence import NullPersistence, PersistenceBackend, safe_persist
from .types import (
    LimitResult,
    ModelCategory,
    Mutation,
    MutationKind,
    QuotaDecision,
    Reservation,
)

lib_logger = logging.getLogger("keypool_library")


def _min_remaining(*values: Optional[int]) -> Optional[int]:
    limited = [v for v in values if v is not None]
    if not limited:
        return None
    return max(0, min(limited))


class QuotaTracker:
    """
    Tracks daily usage against the limits held by a ``ModelRegistry``.

    Reads (``check_quota``, ``remaining_quota``) are plain synchronous
    lookups. ``record_usage`` and the reservation helpers mutate under
    ``self._lock``; each increment is a single critical section.
    """

    def __init__(
        self,
        registry: ModelRegistry,
        clock: Optional[DailyClock] = None,
        persistence: Optional[PersistenceBackend] = None,
    ):
        self.registry = registry
        self.clock = clock or DailyClock()
        self._persistence = persistence or NullPersistence()
        self._lock = asyncio.Lock()

        # (credential_id, bucket, day) -> count
        self._usage: Dict[Tuple[str, str, str], int] = defaultdict(int)
        # (bucket, day) -> count
        self._aggregate: Dict[Tuple[str, str], int] = defaultdict(int)
        # In-flight consuming selections that have not reported back yet,
        # keyed by the day they were taken
        self._reserved: Dict[Tuple[str, str, str], int] = defaultdict(int)
        self._reserved_aggregate: Dict[Tuple[str, str], int] = defaultdict(int)
        # credential_id -> per-bucket daily cap set on the credential itself
        self._key_limits: Dict[str, int] = {}

    # =========================================================================
    # RESOLUTION
    # =========================================================================

    def _resolve(
        self, model: str, category: Optional[Any] = None
    ) -> Tuple[Optional[ModelCategory], str]:
        """Return the model's category (None if unconfigured) and its bucket."""
        resolved = None
        if category is not None:
            try:
                resolved = ModelCategory.parse(category)
            except ValueError:
                lib_logger.warning(
                    f"Ignoring unknown category {category!r} for model {model}"
                )
        if resolved is None:
            resolved = self.registry.category_for(model)
        if resolved is None:
            # Unconfigured models are counted under their own name so the
            # history is still there if the model is configured later.
            return None, model
        return resolved, usage_bucket(model, resolved)

    def set_key_limit(self, credential_id: str, limit: Optional[int]) -> None:
        """Cap one credential per bucket per day. None removes the cap."""
        if limit is None:
            self._key_limits.pop(credential_id, None)
        else:
            self._key_limits[credential_id] = limit

    def individual_limit(self, credential_id: str, model: str) -> Optional[int]:
        """Tighter of the model's per-key quota and the credential's own cap."""
        return _min_remaining(
            self.registry.individual_limit(model), self._key_limits.get(credential_id)
        )

    # =========================================================================
    # READS
    # =========================================================================

    def usage_count(
        self, credential_id: str, bucket: str, day: Optional[str] = None
    ) -> int:
        return self._usage.get((credential_id, bucket, day or self.clock.today()), 0)

    def aggregate_count(self, bucket: str, day: Optional[str] = None) -> int:
        return self._aggregate.get((bucket, day or self.clock.today()), 0)

    def check_quota(
        self,
        credential_id: str,
        model: str,
        include_reserved: bool = True,
    ) -> QuotaDecision:
        """
        Decide whether one more call to ``model`` with this credential fits.

        A call must fit under both the per-key quota and the aggregate
        ceiling of its bucket. Unconfigured models are let through and
        reported as ``UNCONFIGURED_MODEL``.
        """
        category, bucket = self._resolve(model)
        if category is None:
            return QuotaDecision(LimitResult.UNCONFIGURED_MODEL, bucket=bucket)

        today = self.clock.today()
        key_used = self._usage.get((credential_id, bucket, today), 0)
        agg_used = self._aggregate.get((bucket, today), 0)
        if include_reserved:
            key_used += self._reserved.get((credential_id, bucket, today), 0)
            agg_used += self._reserved_aggregate.get((bucket, today), 0)

        key_limit = self.individual_limit(credential_id, model)
        agg_limit = self.registry.aggregate_limit(model, category)
        key_remaining = None if key_limit is None else key_limit - key_used
        agg_remaining = None if agg_limit is None else agg_limit - agg_used
        remaining = _min_remaining(key_remaining, agg_remaining)

        if key_remaining is not None and key_remaining <= 0:
            return QuotaDecision(LimitResult.BLOCKED_KEY_QUOTA, bucket, 0)
        if agg_remaining is not None and agg_remaining <= 0:
            return QuotaDecision(LimitResult.BLOCKED_CATEGORY_QUOTA, bucket, 0)
        return QuotaDecision(LimitResult.ALLOWED, bucket, remaining)

    def is_within_quota(self, credential_id: str, model: str) -> bool:
        return self.check_quota(credential_id, model).allowed

    def remaining_quota(
        self, credential_id: str, model: str, day: Optional[str] = None
    ) -> Optional[int]:
        """
        Calls left for this credential and model on ``day`` (default today).

        Returns the tighter of the per-key and aggregate remainders, or None
        when neither layer is limited. In-flight reservations are not counted.
        """
        category, bucket = self._resolve(model)
        if category is None:
            return None
        day = day or self.clock.today()
        key_limit = self.individual_limit(credential_id, model)
        agg_limit = self.registry.aggregate_limit(model, category)
        return _min_remaining(
            None
            if key_limit is None
            else key_limit - self._usage.get((credential_id, bucket, day), 0),
            None
            if agg_limit is None
            else agg_limit - self._aggregate.get((bucket, day), 0),
        )

    def usage_snapshot(
        self, credential_id: str, day: Optional[str] = None
    ) -> Dict[str, int]:
        """Bucket -> count for one credential on one day."""
        day = day or self.clock.today()
        return {
            bucket: count
            for (cred, bucket, d), count in self._usage.items()
            if cred == credential_id and d == day
        }

    def aggregate_snapshot(self, day: Optional[str] = None) -> Dict[str, int]:
        day = day or self.clock.today()
        return {
            bucket: count for (bucket, d), count in self._aggregate.items() if d == day
        }

    def history(self, credential_id: str) -> Dict[str, Dict[str, int]]:
        """Day -> bucket -> count for every recorded day of one credential."""
        result: Dict[str, Dict[str, int]] = {}
        for (cred, bucket, day), count in self._usage.items():
            if cred == credential_id:
                result.setdefault(day, {})[bucket] = count
        return result

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    def _increment_locked(self, credential_id: str, bucket: str) -> Tuple[str, int, int]:
        today = self.clock.today()
        self._usage[(credential_id, bucket, today)] += 1
        self._aggregate[(bucket, today)] += 1
        return (
            today,
            self._usage[(credential_id, bucket, today)],
            self._aggregate[(bucket, today)],
        )

    def _release_locked(self, reservation: Reservation) -> None:
        key = (reservation.credential_id, reservation.bucket, reservation.day)
        if self._reserved.get(key, 0) <= 0:
            return
        self._reserved[key] -= 1
        if self._reserved[key] == 0:
            del self._reserved[key]
        agg_key = (reservation.bucket, reservation.day)
        self._reserved_aggregate[agg_key] -= 1
        if self._reserved_aggregate[agg_key] <= 0:
            del self._reserved_aggregate[agg_key]

    def _prune_reservations_locked(self, today: str) -> None:
        """Drop reservations left over from earlier days."""
        for key in [k for k in self._reserved if k[2] != today]:
            del self._reserved[key]
        for key in [k for k in self._reserved_aggregate if k[1] != today]:
            del self._reserved_aggregate[key]

    async def record_usage(
        self,
        credential_id: str,
        model: str,
        category: Optional[Any] = None,
        reservation: Optional[Reservation] = None,
    ) -> int:
        """
        Count one successful call. This is the only way usage grows.

        When ``reservation`` is given it is released in the same critical
        section as the increment, so no concurrent check can see the slot
        as free in between.

        Returns:
            The credential's new count for today's bucket
        """
        resolved, bucket = self._resolve(model, category)
        if resolved is None:
            lib_logger.warning(
                f"Recording usage for unconfigured model {model}; it is not quota limited"
            )

        async with self._lock:
            if reservation is not None:
                self._release_locked(reservation)
            today, count, aggregate = self._increment_locked(credential_id, bucket)

        await safe_persist(
            self._persistence,
            Mutation(
                MutationKind.USAGE_INCREMENTED,
                credential_id=credential_id,
                payload={
                    "model": model,
                    "bucket": bucket,
                    "day": today,
                    "count": count,
                    "aggregate": aggregate,
                },
            ),
        )
        return count

    async def reserve(self, credential_id: str, model: str) -> Optional[Reservation]:
        """
        Hold one slot of today's quota for an in-flight call.

        Returns the handle to release, or None for unconfigured models.
        Reservations only count on the day they were taken.
        """
        category, bucket = self._resolve(model)
        if category is None:
            return None
        async with self._lock:
            today = self.clock.today()
            self._prune_reservations_locked(today)
            self._reserved[(credential_id, bucket, today)] += 1
            self._reserved_aggregate[(bucket, today)] += 1
        return Reservation(credential_id, bucket, today)

    async def release(self, reservation: Optional[Reservation]) -> None:
        """Give back a slot taken by ``reserve``. Extra releases are ignored."""
        if reservation is None:
            return
        async with self._lock:
            self._release_locked(reservation)

    def reserved_count(self, credential_id: str, bucket: str) -> int:
        return self._reserved.get((credential_id, bucket, self.clock.today()), 0)

    def forget(self, credential_id: str) -> None:
        """Drop a removed credential's per-key records and reservations."""
        self._key_limits.pop(credential_id, None)
        for key in [k for k in self._usage if k[0] == credential_id]:
            del self._usage[key]
        for key in [k for k in self._reserved if k[0] == credential_id]:
            agg_key = (key[1], key[2])
            self._reserved_aggregate[agg_key] -= self._reserved.pop(key)
            if self._reserved_aggregate[agg_key] <= 0:
                del self._reserved_aggregate[agg_key]

    def restore(
        self,
        usage: Mapping[str, Mapping[str, Mapping[str, int]]],
        aggregate: Optional[Mapping[str, Mapping[str, int]]] = None,
    ) -> None:
        """
        Load stored counters.

        Args:
            usage: credential_id -> day -> bucket -> count
            aggregate: day -> bucket -> count; summed from ``usage`` if absent
        """
        self._usage.clear()
        self._aggregate.clear()
        for credential_id, days in usage.items():
            for day, buckets in days.items():
                for bucket, count in buckets.items():
                    self._usage[(credential_id, bucket, day)] = int(count)
                    if aggregate is None:
                        self._aggregate[(bucket, day)] += int(count)
        if aggregate is not None:
            for day, buckets in aggregate.items():
                for bucket, count in buckets.items():
                    self._aggregate[(bucket, day)] = int(count)
