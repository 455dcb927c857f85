"""
Client for the external review source (GeoScraper-style review API).

fetch() returns plain dicts in the pipeline's record shape; validation is
the ingestor's job. Failures are classified here: anything worth retrying
later raises TransientSourceError, a rejected place id raises
PermanentSourceError. Retries themselves belong to the sync queue, so the
HTTP session only retries connection setup.
"""

import logging
import os
import threading
import time
from datetime import datetime, timezone
from typing import Dict, Any, Optional, List, Tuple

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from review_pipeline.errors import PermanentSourceError, TransientSourceError

log = logging.getLogger("pipeline")

DEFAULT_BASE_URL = "https://api.geoscraper.net/google/map/review"
TOKEN_ENV_VAR = "REVIEW_SOURCE_TOKEN"
TOKEN_HEADER = "X-Berserker-Token"

_PERMANENT_STATUSES = {400, 401, 403, 404, 410, 422}


def _first(raw: Dict[str, Any], *paths: str) -> Any:
    """First non-empty value among dotted key paths."""
    for path in paths:
        value: Any = raw
        for part in path.split("."):
            if not isinstance(value, dict):
                value = None
                break
            value = value.get(part)
        if value not in (None, ""):
            return value
    return None


def _timestamp_to_iso(value: Any) -> Optional[str]:
    """Epoch seconds, milliseconds or microseconds to ISO 8601 UTC."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return str(value) if value else None
    if number > 2e14:
        number /= 1_000_000
    elif number > 2e11:
        number /= 1000
    return datetime.fromtimestamp(number, tz=timezone.utc).isoformat()


def normalize_source_review(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Map a provider review object onto the pipeline's record fields."""
    published = _first(raw, "publishedAtDate_timestamp", "timestamp")
    published_at = (_timestamp_to_iso(published) if published is not None
                    else _first(raw, "publishedAtDate", "iso_date", "date"))
    return {
        "review_id": _first(raw, "review_id", "id"),
        "author_name": _first(raw, "user_name", "user.name", "author_name") or "Anonymous",
        "rating": _first(raw, "rating"),
        "text": _first(raw, "snippet", "text", "translated_snippet") or "",
        "published_at": published_at,
        "reply_text": _first(raw, "owner_response_text", "owner_response.text",
                             "response.text"),
        "verified": True,
    }


def split_page(payload: Any) -> Tuple[List[Dict[str, Any]], Optional[str]]:
    """
    Split one response body into (reviews, next_page_token).

    A list response may end with a bare string: that is the next-page
    token. A dict response wraps reviews in 'data' or 'reviews' and may
    carry its own token; without one it is the last page.
    """
    if isinstance(payload, list):
        token = None
        items = payload
        if items and isinstance(items[-1], str):
            token = items[-1] or None
            items = items[:-1]
        return [r for r in items if isinstance(r, dict)], token

    if isinstance(payload, dict):
        for key in ("data", "reviews", "result"):
            if isinstance(payload.get(key), list):
                token = payload.get("next_page_token") or payload.get("token")
                return [r for r in payload[key] if isinstance(r, dict)], token or None
    return [], None


class ReviewSourceClient:
    """
    HTTP client for the review source.

    One requests.Session per thread, so a single client can be shared by
    the processor's workers.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        source_cfg = (config or {}).get("source", {}) or {}
        self.base_url = source_cfg.get("base_url", DEFAULT_BASE_URL)
        self.token = source_cfg.get("token") or os.environ.get(
            source_cfg.get("token_env", TOKEN_ENV_VAR), "")
        self.timeout = float(source_cfg.get("timeout", 30))
        self.page_delay = float(source_cfg.get("page_delay", 0.5))
        self.max_pages = int(source_cfg.get("max_pages", 50))
        self.sort_by = source_cfg.get("sort_by", "newest")
        self.language = source_cfg.get("language", "en")
        self._local = threading.local()

    @property
    def session(self) -> requests.Session:
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            # Connection setup only; status-based retries are the queue's job.
            retry = Retry(total=2, connect=2, read=0, status=0, backoff_factor=0.5)
            session.mount("https://", HTTPAdapter(max_retries=retry))
            session.mount("http://", HTTPAdapter(max_retries=retry))
            if self.token:
                session.headers[TOKEN_HEADER] = self.token
            self._local.session = session
        return session

    def fetch(self, place_id: str, max_records: int = 200) -> List[Dict[str, Any]]:
        """
        Fetch up to roughly *max_records* reviews for a place, newest first.

        Pagination stops once max_records is reached, the source returns no
        token, or max_pages is hit. The caller still truncates.

        Raises:
            TransientSourceError: network failure, timeout, 429, 5xx, bad body
            PermanentSourceError: unknown or rejected place id
        """
        if not place_id:
            raise PermanentSourceError("No place identifier to fetch")

        reviews: List[Dict[str, Any]] = []
        token: Optional[str] = None
        pages = 0
        while pages < self.max_pages:
            payload = self._request_page(place_id, token)
            pages += 1
            page, token = split_page(payload)
            reviews.extend(normalize_source_review(r) for r in page)
            if not page or not token or len(reviews) >= max_records:
                break
            if self.page_delay:
                time.sleep(self.page_delay)

        log.info(f"Fetched {len(reviews)} review(s) for {place_id} in {pages} page(s)")
        return reviews

    def _request_page(self, place_id: str, token: Optional[str]) -> Any:
        body: Dict[str, Any] = {
            "data_id": place_id,
            "sort_by": self.sort_by,
            "hl": self.language,
        }
        if token:
            body["token"] = token

        try:
            response = self.session.post(self.base_url, json=body, timeout=self.timeout)
        except requests.Timeout as e:
            raise TransientSourceError(f"Timed out fetching {place_id}: {e}") from e
        except requests.RequestException as e:
            raise TransientSourceError(f"Network error fetching {place_id}: {e}") from e

        status = response.status_code
        if status == 429 or status >= 500:
            raise TransientSourceError(
                f"Source returned {status} for {place_id}", status_code=status)
        if status in _PERMANENT_STATUSES:
            raise PermanentSourceError(
                f"Source rejected place id {place_id} ({status}): {response.text[:200]}",
                status_code=status)
        if status >= 400:
            raise TransientSourceError(
                f"Source returned {status} for {place_id}", status_code=status)

        try:
            return response.json()
        except ValueError as e:
            raise TransientSourceError(f"Invalid JSON from source for {place_id}") from e

    def close(self) -> None:
        session = getattr(self._local, "session", None)
        if session is not None:
            session.close()
            self._local.session = None
