"""What the quest core needs from a social platform client."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from xsocial.models import Reply


class SocialClient(Protocol):
    async def post(
        self,
        text: str,
        reply_to: str | None = None,
        media_ids: list[str] | None = None,
    ) -> str: ...

    async def fetch_replies(
        self,
        message_id: str,
        before: datetime | None = None,
    ) -> list[Reply]: ...
