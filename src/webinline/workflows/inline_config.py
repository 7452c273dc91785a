"""Inliner defaults (marker attribute, headers, env names, mime fallbacks).

Centralizes static defaults so inliner.py and web_fetch.py have no embedded
magic strings. Callers override any of them through InlineOptions/FetchConfig.
"""

from __future__ import annotations

# Markers
DEFAULT_INLINE_ATTRIBUTE = "data-inline"

# Headers
HDR_USER_AGENT = "User-Agent"
HDR_ACCEPT_LANGUAGE = "Accept-Language"
HDR_CONTENT_TYPE = "Content-Type"
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)
DEFAULT_ACCEPT_LANGUAGE = "en-US,en;q=0.9"

# Environment overrides
ENV_HTTP_TIMEOUT = "WEBINLINE_HTTP_TIMEOUT"
ENV_MAX_ATTEMPTS = "WEBINLINE_MAX_ATTEMPTS"
ENV_USER_AGENT = "WEBINLINE_USER_AGENT"

# Content types
FALLBACK_CONTENT_TYPE = "application/octet-stream"
SVG_CONTENT_TYPE = "image/svg+xml"
# mimetypes misses these on some platforms
EXTRA_CONTENT_TYPES = {
    ".svg": SVG_CONTENT_TYPE,
    ".woff": "font/woff",
    ".woff2": "font/woff2",
    ".ttf": "font/ttf",
    ".otf": "font/otf",
    ".eot": "application/vnd.ms-fontobject",
    ".webp": "image/webp",
    ".ico": "image/x-icon",
}

# Thresholds are expressed in KB of data URI characters.
KB = 1000

REMOTE_SCHEMES = ("http", "https")
