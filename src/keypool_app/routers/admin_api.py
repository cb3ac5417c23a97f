import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from keypool_app.auth import get_base_url, get_engine, get_upstream, require_admin
from keypool_app.upstream import GeminiUpstream
from keypool_library import (
    CredentialNotFoundError,
    DuplicateCredentialError,
    InvalidQuotaError,
    KeyPoolEngine,
    ModelCategory,
    ModelNotFoundError,
    OutcomeKind,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/admin", tags=["admin"], dependencies=[Depends(require_admin)]
)


class AddKeyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    key: str | None = None
    name: str | None = None
    daily_quota: Any = Field(default=None, alias="dailyQuota")


class KeyQuotaRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    daily_quota: Any = Field(default=None, alias="dailyQuota")


class TestKeyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    key_id: str | None = Field(default=None, alias="keyId")
    model_id: str | None = Field(default=None, alias="modelId")


class ClearKeyErrorRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    key_id: Any = Field(default=None, alias="keyId")


class ModelConfigRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str | None = None
    category: str | None = None
    daily_quota: Any = Field(default=None, alias="dailyQuota")
    individual_quota: Any = Field(default=None, alias="individualQuota")


class CategoryQuotasRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    pro_quota: Any = Field(default=None, alias="proQuota")
    flash_quota: Any = Field(default=None, alias="flashQuota")


class ErrorKeyItem(BaseModel):
    id: str
    name: str
    status: int
    timestamp: datetime


def _coerce_quota(value: Any) -> Any:
    """Blank form values mean unlimited; numeric strings become numbers."""
    if value is None or value == "":
        return None
    if isinstance(value, str):
        try:
            return float(value) if "." in value else int(value)
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Quotas must be numbers or null/empty.",
            ) from None
    return value


# --- Gemini key management ---


@router.get("/gemini-keys")
async def list_gemini_keys(
    engine: KeyPoolEngine = Depends(get_engine),
) -> list[dict[str, Any]]:
    return engine.pool.describe()


@router.post("/gemini-keys", status_code=status.HTTP_201_CREATED)
async def add_gemini_key(
    payload: AddKeyRequest,
    engine: KeyPoolEngine = Depends(get_engine),
) -> dict[str, Any]:
    secret = (payload.key or "").strip()
    if not secret:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Request body must include a valid API key (string)",
        )
    try:
        cred = await engine.pool.add(
            secret,
            (payload.name or "").strip() or None,
            daily_quota=_coerce_quota(payload.daily_quota),
        )
    except DuplicateCredentialError:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Cannot add duplicate API key",
        ) from None
    except InvalidQuotaError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from None
    return {
        "success": True,
        "id": cred.id,
        "name": cred.label,
        "dailyQuota": cred.daily_quota,
    }


@router.delete("/gemini-keys/{key_id}")
async def delete_gemini_key(
    key_id: str,
    engine: KeyPoolEngine = Depends(get_engine),
) -> dict[str, Any]:
    try:
        await engine.pool.remove(key_id)
    except CredentialNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from None
    return {"success": True, "id": key_id}


async def _set_key_enabled(engine: KeyPoolEngine, key_id: str, enabled: bool) -> dict[str, Any]:
    try:
        cred = await engine.pool.set_enabled(key_id, enabled)
    except CredentialNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from None
    return {"success": True, "id": cred.id, "enabled": cred.enabled}


@router.post("/gemini-keys/{key_id}/enable")
async def enable_gemini_key(
    key_id: str,
    engine: KeyPoolEngine = Depends(get_engine),
) -> dict[str, Any]:
    return await _set_key_enabled(engine, key_id, True)


@router.post("/gemini-keys/{key_id}/disable")
async def disable_gemini_key(
    key_id: str,
    engine: KeyPoolEngine = Depends(get_engine),
) -> dict[str, Any]:
    return await _set_key_enabled(engine, key_id, False)


@router.post("/gemini-keys/{key_id}/quota")
async def set_gemini_key_quota(
    key_id: str,
    payload: KeyQuotaRequest,
    engine: KeyPoolEngine = Depends(get_engine),
) -> dict[str, Any]:
    try:
        cred = await engine.pool.set_daily_quota(key_id, _coerce_quota(payload.daily_quota))
    except CredentialNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from None
    except InvalidQuotaError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from None
    return {"success": True, "id": cred.id, "dailyQuota": cred.daily_quota}


@router.post("/test-gemini-key")
async def test_gemini_key(
    payload: TestKeyRequest,
    engine: KeyPoolEngine = Depends(get_engine),
    upstream: GeminiUpstream = Depends(get_upstream),
    base_url: str = Depends(get_base_url),
) -> JSONResponse:
    if not payload.key_id or not payload.model_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Request body must include keyId and modelId",
        )
    try:
        cred = engine.pool.get(payload.key_id)
    except CredentialNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"API Key with ID '{payload.key_id}' not found or invalid.",
        ) from None

    result = await upstream.generate_content(cred.secret, payload.model_id, base_url)
    await engine.pool.report_outcome(
        cred.id,
        payload.model_id,
        result.outcome,
        category=engine.registry.category_for(payload.model_id),
        release_reservation=False,
    )

    success = result.outcome.kind is OutcomeKind.SUCCESS
    return JSONResponse(
        status_code=status.HTTP_200_OK if success else result.status,
        content={"success": success, "status": result.status, "content": result.body},
    )


@router.get("/gemini-models")
async def list_gemini_models(
    engine: KeyPoolEngine = Depends(get_engine),
    upstream: GeminiUpstream = Depends(get_upstream),
    base_url: str = Depends(get_base_url),
) -> list[dict[str, Any]]:
    # Read-only selection: listing models must not take a rotation turn
    cred = await engine.pool.select_next(consuming=False)
    if cred is None:
        logger.warning("No available Gemini key found to fetch models list.")
        return []
    models = await upstream.list_models(cred.secret, base_url)
    return models or []


# --- Error key management ---


@router.get("/error-keys", response_model=list[ErrorKeyItem])
async def list_error_keys(
    engine: KeyPoolEngine = Depends(get_engine),
) -> list[ErrorKeyItem]:
    items = []
    for credential_id, http_status, timestamp in engine.errors.list_errored():
        label = engine.pool.get(credential_id).label if credential_id in engine.pool else ""
        items.append(
            ErrorKeyItem(id=credential_id, name=label, status=http_status, timestamp=timestamp)
        )
    return items


@router.post("/clear-key-error")
async def clear_key_error(
    payload: ClearKeyErrorRequest,
    engine: KeyPoolEngine = Depends(get_engine),
) -> dict[str, Any]:
    if not payload.key_id or not isinstance(payload.key_id, str):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Request body must include a valid keyId (string)",
        )
    try:
        await engine.pool.clear_error(payload.key_id)
    except CredentialNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from None
    return {"success": True, "id": payload.key_id}


# --- Model configuration ---


@router.get("/models")
async def list_model_configs(
    engine: KeyPoolEngine = Depends(get_engine),
) -> list[dict[str, Any]]:
    return [{"id": model, **config.to_dict()} for model, config in engine.registry.all().items()]


@router.post("/models")
async def set_model_config(
    payload: ModelConfigRequest,
    engine: KeyPoolEngine = Depends(get_engine),
) -> dict[str, Any]:
    valid_categories = [c.value for c in ModelCategory]
    if not payload.id or payload.category not in valid_categories:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Request body must include valid id and category (Pro, Flash, or Custom)",
        )
    try:
        config = await engine.registry.set_model(
            payload.id,
            payload.category,
            individual_quota=_coerce_quota(payload.individual_quota),
            daily_quota=_coerce_quota(payload.daily_quota),
        )
    except InvalidQuotaError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from None
    return {"success": True, "id": payload.id, **config.to_dict()}


@router.delete("/models/{model_id:path}")
async def delete_model_config(
    model_id: str,
    engine: KeyPoolEngine = Depends(get_engine),
) -> dict[str, Any]:
    try:
        await engine.registry.delete_model(model_id)
    except ModelNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from None
    return {"success": True, "id": model_id}


# --- Category quotas ---


@router.get("/category-quotas")
async def get_category_quotas(
    engine: KeyPoolEngine = Depends(get_engine),
) -> dict[str, Any]:
    return engine.registry.category_quotas.to_dict()


@router.post("/category-quotas")
async def set_category_quotas(
    payload: CategoryQuotasRequest,
    engine: KeyPoolEngine = Depends(get_engine),
) -> dict[str, Any]:
    try:
        quotas = await engine.registry.set_category_quotas(
            _coerce_quota(payload.pro_quota), _coerce_quota(payload.flash_quota)
        )
    except InvalidQuotaError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from None
    return {"success": True, **quotas.to_dict()}
