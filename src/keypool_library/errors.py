# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""Named error conditions raised by administrative operations."""

from typing import Optional


class KeyPoolError(Exception):
    """Base class for key pool errors."""


class DuplicateCredentialError(KeyPoolError):
    """Raised when adding a secret that is already in the pool."""

    def __init__(self, message: str = "duplicate credential"):
        super().__init__(message)


class CredentialNotFoundError(KeyPoolError):
    """Raised when a credential id does not exist in the pool."""

    def __init__(self, credential_id: str):
        self.credential_id = credential_id
        super().__init__(f"credential not found: {credential_id}")


class ModelNotFoundError(KeyPoolError):
    """Raised when deleting a model configuration that does not exist."""

    def __init__(self, model: str):
        self.model = model
        super().__init__(f"model not found: {model}")


class InvalidQuotaError(KeyPoolError, ValueError):
    """Raised when a quota is negative, fractional or not a number."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)
