import logging
from dataclasses import dataclass
from typing import Any

import httpx

from keypool_library import Outcome
from keypool_library.gateway import generate_content_url, models_list_url
from keypool_library.utils import mask_secret

logger = logging.getLogger(__name__)

PING_REQUEST_BODY = {"contents": [{"role": "user", "parts": [{"text": "Hi"}]}]}


@dataclass(slots=True)
class UpstreamResult:
    status: int
    body: Any
    outcome: Outcome


def _parse_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return {"error": response.text}


class GeminiUpstream:
    """
    Thin transport for the two upstream calls the admin surface makes.

    Transport errors (timeouts, connection failures) are turned into
    ``Outcome.other_failure()`` and never reach the caller as exceptions.
    """

    def __init__(self, client: httpx.AsyncClient):
        self._client = client

    async def generate_content(
        self,
        secret: str,
        model: str,
        base_url: str,
        body: dict[str, Any] | None = None,
    ) -> UpstreamResult:
        url = generate_content_url(base_url, model)
        try:
            response = await self._client.post(
                url,
                json=body or PING_REQUEST_BODY,
                headers={"Content-Type": "application/json", "x-goog-api-key": secret},
            )
        except httpx.HTTPError as e:
            logger.error(
                "Upstream call failed for key %s model %s: %s", mask_secret(secret), model, e
            )
            return UpstreamResult(
                status=500,
                body={"error": f"Fetch error: {e}"},
                outcome=Outcome.other_failure(),
            )

        return UpstreamResult(
            status=response.status_code,
            body=_parse_body(response),
            outcome=Outcome.from_status(response.status_code),
        )

    async def list_models(self, secret: str, base_url: str) -> list[dict[str, Any]] | None:
        """Return the upstream model list, or None if the call failed."""
        try:
            response = await self._client.get(
                models_list_url(base_url),
                headers={"Content-Type": "application/json", "x-goog-api-key": secret},
            )
        except httpx.HTTPError as e:
            logger.error("Fetching model list failed for key %s: %s", mask_secret(secret), e)
            return None

        if response.status_code >= 400:
            logger.error(
                "Error fetching model list (key %s): %s %s",
                mask_secret(secret),
                response.status_code,
                response.text,
            )
            return None

        data = _parse_body(response)
        if not isinstance(data, dict):
            return []

        models = []
        for model in data.get("models") or []:
            name = model.get("name") or ""
            if not name.startswith("models/"):
                continue
            model_id = name[len("models/"):]
            models.append(
                {
                    "id": model_id,
                    "name": model.get("displayName") or model_id,
                    "description": model.get("description"),
                }
            )
        return models
