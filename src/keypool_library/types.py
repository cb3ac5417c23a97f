# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Type definitions for the key pool engine.

This module contains the dataclasses and enums shared by the quota tracker,
error tracker, key pool and persistence backends.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from .errors import InvalidQuotaError


AUTH_FAILURE_STATUSES = frozenset({401, 403})


# =============================================================================
# ENUMS
# =============================================================================


class ModelCategory(str, Enum):
    """Closed set of model categories that share quota accounting."""

    PRO = "Pro"
    FLASH = "Flash"
    CUSTOM = "Custom"

    @classmethod
    def parse(cls, value: Any) -> "ModelCategory":
        """Build a category from its name, raising ValueError for unknown values."""
        if isinstance(value, cls):
            return value
        for member in cls:
            if member.value == value:
                return member
        raise ValueError(f"Unknown model category: {value!r}")


class LimitResult(str, Enum):
    """Result of a quota check."""

    ALLOWED = "allowed"
    BLOCKED_KEY_QUOTA = "blocked_key_quota"
    BLOCKED_CATEGORY_QUOTA = "blocked_category_quota"
    UNCONFIGURED_MODEL = "unconfigured_model"  # allowed, but flagged


class OutcomeKind(str, Enum):
    """How an upstream call ended, from the engine's point of view."""

    SUCCESS = "success"
    AUTH_FAILURE = "auth_failure"
    OTHER_FAILURE = "other_failure"


class MutationKind(str, Enum):
    """Kinds of state change handed to a persistence backend."""

    CREDENTIAL_ADDED = "credential_added"
    CREDENTIAL_REMOVED = "credential_removed"
    CREDENTIAL_UPDATED = "credential_updated"
    USAGE_INCREMENTED = "usage_incremented"
    ERROR_RECORDED = "error_recorded"
    ERROR_CLEARED = "error_cleared"
    CURSOR_ADVANCED = "cursor_advanced"
    MODEL_CONFIG_SET = "model_config_set"
    MODEL_CONFIG_DELETED = "model_config_deleted"
    CATEGORY_QUOTAS_SET = "category_quotas_set"


# =============================================================================
# QUOTA VALUES
# =============================================================================


def validate_quota(value: Any, field_name: str = "quota") -> Optional[int]:
    """
    Normalize a quota value.

    ``None`` means unlimited. Anything else must be a non-negative integer;
    integral floats (e.g. ``5.0`` from a JSON body) are accepted.

    Raises:
        InvalidQuotaError: for negative, fractional or non-numeric values
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise InvalidQuotaError(f"{field_name} must be a non-negative integer or null")
    if isinstance(value, float):
        if not value.is_integer():
            raise InvalidQuotaError(
                f"{field_name} must be a non-negative integer or null"
            )
        value = int(value)
    if not isinstance(value, int) or value < 0:
        raise InvalidQuotaError(f"{field_name} must be a non-negative integer or null")
    return value


# =============================================================================
# CORE RECORDS
# =============================================================================


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Credential:
    """One upstream API key held by the pool."""

    id: str
    secret: str
    label: str = ""
    enabled: bool = True
    created_at: datetime = field(default_factory=utcnow)
    # Per-bucket daily cap for this key alone, on top of model quotas
    daily_quota: Optional[int] = None

    def __post_init__(self):
        self.daily_quota = validate_quota(self.daily_quota, "dailyQuota")

    def __repr__(self) -> str:
        # Keep secrets out of reprs that end up in logs and tracebacks
        return (
            f"Credential(id={self.id!r}, label={self.label!r}, "
            f"enabled={self.enabled!r})"
        )


@dataclass(frozen=True)
class ErrorState:
    """Most recent authentication failure observed for a credential."""

    status: int
    timestamp: datetime


@dataclass(frozen=True)
class ModelConfig:
    """
    Quota configuration for one model.

    ``individual_quota`` caps each key per day. ``daily_quota`` caps the model
    across all keys and only applies to Custom models; Pro and Flash share the
    category ceilings in ``CategoryQuotas``.
    """

    category: ModelCategory
    individual_quota: Optional[int] = None
    daily_quota: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, "category", ModelCategory.parse(self.category))
        object.__setattr__(
            self,
            "individual_quota",
            validate_quota(self.individual_quota, "individualQuota"),
        )
        object.__setattr__(
            self, "daily_quota", validate_quota(self.daily_quota, "dailyQuota")
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category.value,
            "individualQuota": self.individual_quota,
            "dailyQuota": self.daily_quota,
        }


@dataclass(frozen=True)
class CategoryQuotas:
    """Aggregate daily ceilings for the shared categories."""

    pro: Optional[int] = None
    flash: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, "pro", validate_quota(self.pro, "proQuota"))
        object.__setattr__(self, "flash", validate_quota(self.flash, "flashQuota"))

    def for_category(self, category: ModelCategory) -> Optional[int]:
        if category is ModelCategory.PRO:
            return self.pro
        if category is ModelCategory.FLASH:
            return self.flash
        return None

    def to_dict(self) -> Dict[str, Optional[int]]:
        return {"proQuota": self.pro, "flashQuota": self.flash}


@dataclass(frozen=True)
class QuotaDecision:
    """Outcome of a quota check for one (credential, model) pair."""

    result: LimitResult
    bucket: Optional[str] = None
    remaining: Optional[int] = None  # None = unlimited

    @property
    def allowed(self) -> bool:
        return self.result in (LimitResult.ALLOWED, LimitResult.UNCONFIGURED_MODEL)

    @property
    def unconfigured(self) -> bool:
        return self.result is LimitResult.UNCONFIGURED_MODEL


@dataclass(frozen=True)
class Outcome:
    """Result of an upstream call reported back to the pool."""

    kind: OutcomeKind
    status: Optional[int] = None

    @classmethod
    def success(cls) -> "Outcome":
        return cls(OutcomeKind.SUCCESS)

    @classmethod
    def auth_failure(cls, status: int) -> "Outcome":
        if status not in AUTH_FAILURE_STATUSES:
            raise ValueError(f"Auth failures are 401 or 403, got {status}")
        return cls(OutcomeKind.AUTH_FAILURE, status)

    @classmethod
    def other_failure(cls, status: Optional[int] = None) -> "Outcome":
        return cls(OutcomeKind.OTHER_FAILURE, status)

    @classmethod
    def from_status(cls, status: int) -> "Outcome":
        """Classify an HTTP status code from the upstream response."""
        if 200 <= status < 300:
            return cls.success()
        if status in AUTH_FAILURE_STATUSES:
            return cls.auth_failure(status)
        return cls.other_failure(status)


@dataclass(frozen=True)
class Mutation:
    """A single state change to be persisted."""

    kind: MutationKind
    credential_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Reservation:
    """One slot of quota held for an in-flight call, released by handle."""

    credential_id: str
    bucket: str
    day: str
