from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from ..core.errors import ScoringServiceError

logger = logging.getLogger(__name__)

LAYER_TIMEOUTS = {"layer3": 30.0, "layer4": 60.0}


class ScoringClient:
    """HTTP client for the external scoring service (``POST /analyze/<layer>``)."""

    def __init__(
        self,
        base_url: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeouts: Optional[Dict[str, float]] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = http_client or httpx.AsyncClient()
        self._owns_client = http_client is None
        self.timeouts = {**LAYER_TIMEOUTS, **(timeouts or {})}

    async def analyze(self, layer: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}/analyze/{layer}"
        timeout = self.timeouts.get(layer, 60.0)
        try:
            response = await self._client.post(url, json=payload, timeout=timeout)
        except httpx.TimeoutException as exc:
            raise ScoringServiceError(f"Scoring service timed out for {layer}", {"timeout": timeout}) from exc
        except httpx.HTTPError as exc:
            raise ScoringServiceError(f"Scoring service request failed for {layer}", {"error": str(exc)}) from exc

        if response.status_code >= 400:
            raise ScoringServiceError(
                f"Analysis service returned {response.status_code}",
                {"layer": layer, "status_code": response.status_code},
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise ScoringServiceError("Scoring service returned invalid JSON", {"layer": layer}) from exc
        if not isinstance(body, dict):
            raise ScoringServiceError("Scoring service returned a non-object body", {"layer": layer})
        return body

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
