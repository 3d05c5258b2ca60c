"""Async client for the X API v2."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from .models import PostedMessage, Reply, users_by_id

logger = logging.getLogger(__name__)

# Only ever send credentials to this domain
_ALLOWED_HOST = "api.x.com"

# search/recent rejects an end_time closer than this to "now"
_END_TIME_MARGIN = timedelta(seconds=10)


class XApiError(Exception):
    """Raised when the X API returns an error."""

    def __init__(self, message: str, status_code: int = 0, detail: str = ""):
        self.status_code = status_code
        self.detail = detail
        super().__init__(message)


class RateLimitError(XApiError):
    """Raised when we hit a rate limit (429)."""

    def __init__(self, message: str, retry_after: float = 0):
        self.retry_after = retry_after
        super().__init__(message, status_code=429)


class XClient:
    """Async wrapper for the parts of the X API the quest bot uses.

    Reads use the app bearer token; posts use the bot account's OAuth 2.0
    user access token.

    Usage::

        async with XClient(bearer_token="...", user_token="...") as x:
            message_id = await x.post("Chapter 1 ...", reply_to="1790...")
    """

    BASE_URL = "https://api.x.com/2"

    def __init__(
        self,
        bearer_token: str,
        user_token: str = "",
        timeout: float = 30.0,
        base_url: str | None = None,
        max_pages: int = 5,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._bearer_token = bearer_token
        self._user_token = user_token
        self._max_pages = max_pages
        self._client = httpx.AsyncClient(
            base_url=base_url or self.BASE_URL,
            headers={"Content-Type": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> XClient:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    # ── Request helpers ─────────────────────────────────────────

    async def _request(
        self, method: str, path: str, token: str, **kwargs: Any
    ) -> dict:
        """Make an authenticated API request and return the parsed body."""
        def _json_or_empty(resp: httpx.Response) -> dict[str, Any]:
            if not resp.content:
                return {}
            try:
                data = resp.json()
            except ValueError:
                return {}
            return data if isinstance(data, dict) else {}

        url = self._client.build_request(method, path).url
        if url.host != _ALLOWED_HOST:
            raise XApiError(f"Refusing to send credentials to {url.host}")

        headers = {"Authorization": f"Bearer {token}"}
        try:
            resp = await self._client.request(method, path, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            raise XApiError(f"Transport error calling {path}: {exc}") from exc
        body = _json_or_empty(resp)

        if resp.status_code == 429:
            reset = resp.headers.get("x-rate-limit-reset", "")
            retry = max(0.0, float(reset) - time.time()) if reset.isdigit() else 0.0
            raise RateLimitError(
                f"Rate limited: {body.get('title', 'too many requests')}",
                retry_after=retry,
            )

        if resp.status_code >= 400:
            raise XApiError(
                body.get("title", f"HTTP {resp.status_code}"),
                status_code=resp.status_code,
                detail=body.get("detail", ""),
            )

        return body

    # ── Posting ─────────────────────────────────────────────────

    async def post(
        self,
        text: str,
        reply_to: str | None = None,
        media_ids: list[str] | None = None,
    ) -> str:
        """Post a message (optionally as a reply) and return its id."""
        if not self._user_token:
            raise XApiError("No user access token configured for posting")
        payload: dict[str, Any] = {"text": text}
        if reply_to:
            payload["reply"] = {"in_reply_to_tweet_id": reply_to}
        if media_ids:
            payload["media"] = {"media_ids": media_ids}

        body = await self._request("POST", "/tweets", self._user_token, json=payload)
        posted = PostedMessage.from_api(body.get("data", {}))
        if not posted.id:
            raise XApiError("Post succeeded but returned no message id")
        logger.info("Posted %s (reply_to=%s): %s", posted.id, reply_to or "-", text[:60])
        return posted.id

    # ── Reading replies ─────────────────────────────────────────

    async def fetch_replies(
        self,
        message_id: str,
        before: datetime | None = None,
    ) -> list[Reply]:
        """Direct replies to ``message_id`` created no later than ``before``."""
        params: dict[str, Any] = {
            "query": f"in_reply_to_tweet_id:{message_id}",
            "tweet.fields": "author_id,created_at,referenced_tweets",
            "expansions": "author_id",
            "user.fields": "username",
            "max_results": 100,
        }
        now = datetime.now(timezone.utc)
        if before is not None and before < now - _END_TIME_MARGIN:
            params["end_time"] = before.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")

        replies: list[Reply] = []
        for _ in range(self._max_pages):
            body = await self._request(
                "GET", "/tweets/search/recent", self._bearer_token, params=params
            )
            users = users_by_id(body.get("includes"))
            for item in body.get("data") or []:
                reply = Reply.from_api(item, users)
                if before is not None and reply.created_at and reply.created_at > before:
                    continue
                replies.append(reply)

            next_token = (body.get("meta") or {}).get("next_token")
            if not next_token:
                break
            params["next_token"] = next_token

        logger.debug("Fetched %d replies to %s", len(replies), message_id)
        return replies
