# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Model-to-category configuration and category quota ceilings.

Pro and Flash models share one usage bucket per category. Custom models are
accounted individually: each custom model is its own bucket and carries its
own aggregate ``daily_quota``.
"""

import asyncio
import logging
from typing import Any, Dict, Mapping, Optional

from .errors import ModelNotFoundError
from .persistence import NullPersistence, PersistenceBackend, safe_persist
from .types import (
    CategoryQuotas,
    ModelCategory,
    ModelConfig,
    Mutation,
    MutationKind,
)

lib_logger = logging.getLogger("keypool_library")


def usage_bucket(model: str, category: ModelCategory) -> str:
    """Name of the usage bucket a call to ``model`` is counted in."""
    if category is ModelCategory.CUSTOM:
        return model
    return category.value


class ModelRegistry:
    def __init__(
        self,
        models: Optional[Mapping[str, ModelConfig]] = None,
        category_quotas: Optional[CategoryQuotas] = None,
        persistence: Optional[PersistenceBackend] = None,
    ):
        self._models: Dict[str, ModelConfig] = dict(models or {})
        self._category_quotas = category_quotas or CategoryQuotas()
        self._persistence = persistence or NullPersistence()
        self._lock = asyncio.Lock()

    # =========================================================================
    # LOOKUPS
    # =========================================================================

    def get(self, model: str) -> Optional[ModelConfig]:
        return self._models.get(model)

    def is_configured(self, model: str) -> bool:
        return model in self._models

    def all(self) -> Dict[str, ModelConfig]:
        return dict(self._models)

    @property
    def category_quotas(self) -> CategoryQuotas:
        return self._category_quotas

    def category_for(self, model: str) -> Optional[ModelCategory]:
        config = self._models.get(model)
        return config.category if config else None

    def aggregate_limit(self, model: str, category: ModelCategory) -> Optional[int]:
        """Ceiling shared by every key for the bucket ``model`` falls into."""
        if category is ModelCategory.CUSTOM:
            config = self._models.get(model)
            return config.daily_quota if config else None
        return self._category_quotas.for_category(category)

    def individual_limit(self, model: str) -> Optional[int]:
        config = self._models.get(model)
        return config.individual_quota if config else None

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    async def set_model(
        self,
        model: str,
        category: Any,
        individual_quota: Any = None,
        daily_quota: Any = None,
    ) -> ModelConfig:
        """
        Add or replace a model configuration.

        Raises:
            InvalidQuotaError: if a quota is not a non-negative integer or None
            ValueError: if the category is not Pro, Flash or Custom
        """
        config = ModelConfig(
            category=ModelCategory.parse(category),
            individual_quota=individual_quota,
            daily_quota=daily_quota,
        )
        async with self._lock:
            self._models[model] = config
        lib_logger.info(f"Model config set: {model} -> {config.category.value}")
        await safe_persist(
            self._persistence,
            Mutation(
                MutationKind.MODEL_CONFIG_SET,
                payload={"model": model, "config": config.to_dict()},
            ),
        )
        return config

    async def delete_model(self, model: str) -> None:
        async with self._lock:
            if model not in self._models:
                raise ModelNotFoundError(model)
            del self._models[model]
        lib_logger.info(f"Model config deleted: {model}")
        await safe_persist(
            self._persistence,
            Mutation(MutationKind.MODEL_CONFIG_DELETED, payload={"model": model}),
        )

    async def set_category_quotas(
        self, pro_quota: Any = None, flash_quota: Any = None
    ) -> CategoryQuotas:
        quotas = CategoryQuotas(pro=pro_quota, flash=flash_quota)
        async with self._lock:
            self._category_quotas = quotas
        await safe_persist(
            self._persistence,
            Mutation(MutationKind.CATEGORY_QUOTAS_SET, payload=quotas.to_dict()),
        )
        return quotas

    def restore(
        self,
        models: Mapping[str, Mapping[str, Any]],
        category_quotas: Optional[Mapping[str, Any]] = None,
    ) -> None:
        """
        Load configuration previously written by a persistence backend.

        Entries with an unknown category or an invalid quota are skipped with
        a warning rather than failing startup.
        """
        loaded: Dict[str, ModelConfig] = {}
        for model, raw in models.items():
            try:
                loaded[model] = ModelConfig(
                    category=ModelCategory.parse(raw.get("category")),
                    individual_quota=raw.get("individualQuota"),
                    daily_quota=raw.get("dailyQuota"),
                )
            except ValueError as e:
                lib_logger.warning(f"Skipping stored model config {model!r}: {e}")
        self._models = loaded

        if category_quotas:
            try:
                self._category_quotas = CategoryQuotas(
                    pro=category_quotas.get("proQuota"),
                    flash=category_quotas.get("flashQuota"),
                )
            except ValueError as e:
                lib_logger.warning(f"Ignoring stored category quotas: {e}")
