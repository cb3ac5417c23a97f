import hmac

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader

from keypool_app.settings import get_admin_api_key, get_gateway_directive
from keypool_app.upstream import GeminiUpstream
from keypool_library import KeyPoolEngine
from keypool_library.gateway import resolve_base_url

api_key_header = APIKeyHeader(name="Authorization", auto_error=False)


def _extract_bearer(auth: str | None) -> str | None:
    if not auth:
        return None
    scheme, _, token = auth.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token.strip()


async def require_admin(auth: str | None = Depends(api_key_header)) -> str:
    token = _extract_bearer(auth)
    if token is None or not hmac.compare_digest(
        token.encode("utf-8"), get_admin_api_key().encode("utf-8")
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing admin API key",
        )
    return token


def get_engine(request: Request) -> KeyPoolEngine:
    return request.app.state.engine


def get_upstream(request: Request) -> GeminiUpstream:
    return request.app.state.upstream


def get_base_url() -> str:
    return resolve_base_url(get_gateway_directive())
