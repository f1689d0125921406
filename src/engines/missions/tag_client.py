"""
HTTP client for the external photo tagging service.

POSTs {"reference": ...} to the configured URL and expects {"tags": [...]}.
Transport and status errors degrade to "no detected tags" so verification
falls back to the tags the user declared; timeouts surface as
asyncio.TimeoutError so the verifier reports EVIDENCE_TIMEOUT.
"""

import asyncio
from typing import List, Optional

import httpx

from src.logging_config import get_logger

logger = get_logger(__name__)


class HttpTagExtractor:
    """TagExtractor backed by an HTTP endpoint."""

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def extract_tags(self, reference: str) -> List[str]:
        if self._client is not None:
            return await self._request(self._client, reference)
        async with httpx.AsyncClient() as client:
            return await self._request(client, reference)

    async def _request(self, client: httpx.AsyncClient, reference: str) -> List[str]:
        try:
            resp = await client.post(self.url, json={"reference": reference}, timeout=self.timeout_seconds)
            resp.raise_for_status()
            data = resp.json()
        except httpx.TimeoutException as exc:
            raise asyncio.TimeoutError(str(exc)) from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Tag extraction failed: %s", exc, extra={"reference": reference})
            return []

        tags = data.get("tags", []) if isinstance(data, dict) else []
        return [str(t) for t in tags if t]
