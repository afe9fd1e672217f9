"""URL observations — categorize surface location changes for the rule engine."""

from datetime import datetime
from typing import Dict, List, Optional
from urllib.parse import urlparse

from taskrelay.models.rules import Observation

URL_CATEGORIES: Dict[str, List[str]] = {
    "meeting": [
        "meet.google.com", "zoom.us", "zoom.com", "teams.microsoft.com",
        "teams.live.com", "webex.com", "gotomeeting.com",
        "whereby.com", "discord.com",
    ],
    "social": [
        "youtube.com", "instagram.com", "twitter.com", "x.com",
        "facebook.com", "reddit.com", "tiktok.com", "linkedin.com",
    ],
    "productivity": [
        "gmail.com", "mail.google.com", "drive.google.com",
        "docs.google.com", "sheets.google.com", "slides.google.com",
        "notion.so", "trello.com", "slack.com",
    ],
    "ai": [
        "chatgpt.com", "chat.openai.com", "gemini.google.com",
        "claude.ai", "copilot.microsoft.com", "poe.com",
    ],
}

IGNORED_PREFIXES = ("chrome://", "chrome-extension://", "about:")


def _hostname(url: str) -> str:
    try:
        return (urlparse(url).hostname or "").lower()
    except ValueError:
        return ""


def categorize_url(url: str) -> str:
    """Map a URL onto a category name, or "other"."""
    hostname = _hostname(url)
    if hostname.startswith("www."):
        hostname = hostname[4:]
    if not hostname:
        return "other"
    for category, domains in URL_CATEGORIES.items():
        if any(hostname == d or hostname.endswith("." + d) for d in domains):
            return category
    return "other"


class UrlObserver:
    """Turns raw location changes into observations, skipping repeats."""

    def __init__(self):
        self._last_url: Optional[str] = None

    def observe(
        self, url: str, current_time: Optional[datetime] = None
    ) -> Optional[Observation]:
        if not url or url == self._last_url or url.startswith(IGNORED_PREFIXES):
            return None
        self._last_url = url
        return Observation(
            url=url,
            domain=_hostname(url),
            category=categorize_url(url),
            observed_at=current_time or datetime.utcnow(),
        )
