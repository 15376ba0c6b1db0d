"""
HTTP catalog collaborator.

Talks to a catalog service exposing:

    GET /media?ids=1,2,3            -> [{"id": 1, "title": ..., "genres": [...], ...}]
    GET /media?genres=A,B&limit=N   -> same shape
    GET /trending?since=ISO&limit=N -> [{"media_id": 1, "interaction_count": 12, ...}]

Transport failures never leak httpx exceptions to the engine: timeouts and
HTTP errors surface as UpstreamUnavailable so batch sweeps skip the user.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable

import httpx

from .config import CATALOG_API_URL, DB_CHUNK_SIZE, HTTP_TIMEOUT
from .database import parse_timestamp_naive
from .errors import UpstreamUnavailable
from .models import MediaMetadata, TrendingItem
from .utils import chunked

logger = logging.getLogger(__name__)


class HttpCatalog:
    def __init__(self, base_url: str | None = None, timeout: float = HTTP_TIMEOUT,
                 transport: httpx.BaseTransport | None = None):
        base_url = base_url or CATALOG_API_URL
        if not base_url:
            raise ValueError("HttpCatalog needs a base_url (or SHOWSYNC_CATALOG_URL)")
        self.client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers={"User-Agent": "showsync-recommender/0.1", "Accept": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    def _get(self, path: str, params: dict[str, Any]) -> Any:
        try:
            resp = self.client.get(path, params=params)
            resp.raise_for_status()
            return resp.json()
        except httpx.TimeoutException as e:
            logger.warning(f"Catalog timeout on {path}: {e}")
            raise UpstreamUnavailable(f"catalog timeout on {path}") from e
        except httpx.HTTPStatusError as e:
            logger.error(f"Catalog HTTP error on {path}: {e}")
            raise UpstreamUnavailable(f"catalog returned {e.response.status_code} on {path}") from e
        except httpx.HTTPError as e:
            logger.error(f"Catalog request error on {path}: {e}")
            raise UpstreamUnavailable(f"catalog request failed on {path}") from e
        except ValueError as e:
            logger.error(f"Catalog returned invalid JSON on {path}: {e}")
            raise UpstreamUnavailable(f"catalog returned invalid JSON on {path}") from e

    def metadata(self, media_ids: Iterable[int]) -> dict[int, MediaMetadata]:
        result: dict[int, MediaMetadata] = {}
        for chunk in chunked(dict.fromkeys(media_ids), DB_CHUNK_SIZE):
            payload = self._get("/media", {"ids": ",".join(str(i) for i in chunk)})
            for item in payload:
                media = _parse_media(item)
                result[media.media_id] = media
        return result

    def media_by_genres(self, genres: Iterable[str], limit: int) -> list[MediaMetadata]:
        wanted = list(dict.fromkeys(genres))
        if not wanted:
            return []
        payload = self._get("/media", {"genres": ",".join(wanted), "limit": limit})
        return [_parse_media(item) for item in payload]

    def trending(self, since: datetime, limit: int) -> list[TrendingItem]:
        payload = self._get("/trending", {"since": since.isoformat(), "limit": limit})
        items = []
        for item in payload:
            last_at = item.get("last_interaction_at")
            items.append(TrendingItem(
                media_id=int(item["media_id"]),
                interaction_count=int(item.get("interaction_count", 0)),
                average_rating=item.get("average_rating"),
                last_interaction_at=parse_timestamp_naive(last_at) if last_at else None,
            ))
        return items

    def close(self):
        self.client.close()


def _parse_media(item: dict) -> MediaMetadata:
    try:
        return MediaMetadata(
            media_id=int(item["id"]),
            title=item.get("title") or f"#{item['id']}",
            genres=list(item.get("genres") or []),
            platform=item.get("platform"),
            release_year=item.get("release_year"),
            media_type=item.get("media_type", "movie"),
            average_rating=item.get("average_rating"),
            popularity=int(item.get("popularity") or 0),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise UpstreamUnavailable(f"catalog returned malformed media entry: {item!r}") from e
