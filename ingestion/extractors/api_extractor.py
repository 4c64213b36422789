"""
Page fetcher for the upstream events API.

This module fetches one page of events per call:
- Cursor-based pagination via the ``cursor`` query parameter
- API key authentication via the ``X-API-Key`` header
- Retry with backoff for 429/5xx delegated to RetryingHTTPClient
- Structured errors for the ingestion loop's recovery policy
"""

import logging
from typing import Any, Dict, Optional

from core.exceptions import CURSOR_EXPIRED_MARKERS, CursorExpiredError, UpstreamHttpError
from ingestion.extractors.envelope import discovery_snapshot, normalize_envelope, parse_json_body
from ingestion.extractors.transport import RetryingHTTPClient
from schemas.page import PageResult

logger = logging.getLogger(__name__)


class EventsAPIClient:
    """
    Fetch pages from ``GET {base_url}/events``.

    Attributes:
        http: Retrying transport used for every request
        base_url: API base URL, without the ``/events`` suffix
        api_key: Value sent in the ``X-API-Key`` header
    """

    def __init__(self, http: RetryingHTTPClient, base_url: str, api_key: str):
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key

    @property
    def events_url(self) -> str:
        return f"{self.base_url}/events"

    async def fetch_page(self, cursor: Optional[str], limit: int) -> PageResult:
        """
        Fetch and normalize one page.

        Args:
            cursor: Opaque pagination token, or None to start from the beginning
            limit: Page size requested from the upstream

        Returns:
            Normalized PageResult

        Raises:
            CursorExpiredError: Upstream rejected the cursor as expired
            UpstreamHttpError: Non-2xx status after transport retries
            BadJsonError: Body is not parseable JSON
            TransportError: Network failure after transport retries
        """
        params: Dict[str, Any] = {"limit": str(limit)}
        if cursor:
            params["cursor"] = cursor

        headers = {
            "X-API-Key": self.api_key,
            "Accept": "application/json",
        }

        response = await self.http.get(self.events_url, headers=headers, params=params)

        if not response.is_success:
            body = response.text
            error_cls = UpstreamHttpError
            if any(marker in body.lower() for marker in CURSOR_EXPIRED_MARKERS):
                error_cls = CursorExpiredError
            raise error_cls(
                response.status_code,
                body,
                context={"api_url": self.events_url, "cursor": cursor}
            )

        payload = parse_json_body(
            response.text,
            context={"api_url": self.events_url, "cursor": cursor}
        )
        page = normalize_envelope(payload, response.headers)

        if cursor is None:
            snapshot = discovery_snapshot(payload, page)
            logger.info(
                f"API discovery: {snapshot}",
                extra={"api_url": self.events_url, "discovery": snapshot}
            )

        return page
