"""High-level exports for the inliner workflows."""

from .extract_utils import ReferenceMatch, extract_css_references, extract_html_references
from .inline_utils import escape_special_chars
from .inliner import (
    InlineError,
    InlineOptions,
    InlineResult,
    css,
    html,
    inline_css,
    inline_html,
)
from .prefilters import InclusionDecision, evaluate_inclusion, should_inline
from .web_fetch import FetchConfig, FetchOutcome, ResourceFetcher

__all__ = [
    "ReferenceMatch",
    "extract_css_references",
    "extract_html_references",
    "escape_special_chars",
    "InlineError",
    "InlineOptions",
    "InlineResult",
    "css",
    "html",
    "inline_css",
    "inline_html",
    "InclusionDecision",
    "evaluate_inclusion",
    "should_inline",
    "FetchConfig",
    "FetchOutcome",
    "ResourceFetcher",
]
