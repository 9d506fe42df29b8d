from __future__ import annotations

from typing import Any, Optional

import httpx

from watchlist.logging import get_logger
from watchlist.service.errors import UpstreamError

logger = get_logger(__name__)

MEDIA_PATHS = {"movie": "movie", "tv": "tv"}


class TMDBClient:
    """Thin passthrough to The Movie Database API.

    Response bodies are returned as decoded JSON without reshaping.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str],
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def _get(self, path: str, params: dict[str, Any]) -> Any:
        if not self.is_configured:
            logger.error("tmdb_not_configured", path=path)
            raise UpstreamError("Movie search is unavailable")
        query = {**params, "api_key": self.api_key}
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout, connect=5.0),
                transport=self.transport,
            ) as client:
                response = await client.get(path, params=query)
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "tmdb_api_error", path=path, status_code=exc.response.status_code
            )
            raise UpstreamError("Movie search is unavailable") from exc
        except httpx.TimeoutException as exc:
            logger.error("tmdb_timeout", path=path, error=str(exc))
            raise UpstreamError("Movie search is unavailable") from exc
        except httpx.HTTPError as exc:
            logger.error("tmdb_request_failed", path=path, error_type=type(exc).__name__)
            raise UpstreamError("Movie search is unavailable") from exc
        except ValueError as exc:
            logger.error("tmdb_bad_payload", path=path)
            raise UpstreamError("Movie search is unavailable") from exc

    async def search(self, query: str, *, page: int = 1) -> Any:
        return await self._get("/search/multi", {"query": query, "page": page})

    async def details(self, media_type: str, tmdb_id: int) -> Any:
        return await self._get(f"/{MEDIA_PATHS[media_type]}/{tmdb_id}", {})
