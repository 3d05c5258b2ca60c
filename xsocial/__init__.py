"""X (Twitter) API v2 access for posting chapters and reading vote replies."""

from .client import RateLimitError, XApiError, XClient
from .models import PostedMessage, Reply

__all__ = [
    "PostedMessage",
    "RateLimitError",
    "Reply",
    "XApiError",
    "XClient",
]
