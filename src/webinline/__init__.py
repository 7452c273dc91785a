"""Inline stylesheets, scripts, images and CSS urls into HTML/CSS documents."""

from .workflows import (
    FetchConfig,
    InlineError,
    InlineOptions,
    InlineResult,
    css,
    escape_special_chars,
    html,
    inline_css,
    inline_html,
)

__all__ = [
    "FetchConfig",
    "InlineError",
    "InlineOptions",
    "InlineResult",
    "css",
    "escape_special_chars",
    "html",
    "inline_css",
    "inline_html",
]
