"""Message content and attachment validation."""
from typing import Any, Iterable, List, Optional, Sequence

from .schemas import Attachment

MAX_CONTENT_LENGTH = 2000
MAX_ATTACHMENTS = 5
ALLOWED_URL_SCHEMES = ("https",)

CONTENT_REQUIRED = "Message content required"
CONTENT_TOO_LONG = "Message too long (max {limit} chars)"


def validate_content(content: Any, max_length: int = MAX_CONTENT_LENGTH) -> Optional[str]:
    """Return an error reason for unusable content, or None if it is acceptable.

    The length limit applies to the trimmed text, which is what gets stored.
    """
    if not isinstance(content, str) or not content.strip():
        return CONTENT_REQUIRED
    if len(content.strip()) > max_length:
        return CONTENT_TOO_LONG.format(limit=max_length)
    return None


def filter_attachments(
    attachments: Optional[Iterable[Any]],
    max_count: int = MAX_ATTACHMENTS,
    allowed_schemes: Sequence[str] = ALLOWED_URL_SCHEMES,
) -> List[Attachment]:
    """Keep only well-formed image attachments served over an allowed scheme.

    Entries that fail the check are dropped; the rest are capped at
    ``max_count`` in their original order.
    """
    if not attachments or not isinstance(attachments, (list, tuple)):
        return []

    prefixes = tuple(f"{scheme}://" for scheme in allowed_schemes)
    kept: List[Attachment] = []
    for item in attachments:
        if not isinstance(item, dict):
            continue
        url = item.get("url")
        if item.get("type") != "image" or not isinstance(url, str):
            continue
        if not url.lower().startswith(prefixes):
            continue
        kept.append(Attachment(type="image", url=url))
        if len(kept) == max_count:
            break
    return kept
