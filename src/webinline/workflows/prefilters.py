from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Union

from ..core.keys import KIND_CSS_URL, KIND_IMAGE, KIND_SCRIPT, KIND_STYLESHEET
from .extract_utils import ReferenceMatch
from .inline_config import KB
from .inline_utils import is_svg

ImageMode = Union[bool, int, float]


@dataclass(frozen=True)
class InclusionDecision:
    keep: bool
    reason: Optional[str] = None
    # Set when the decision still depends on the fetched payload size.
    size_limit_kb: Optional[float] = None


def _threshold(mode: Any) -> Optional[float]:
    """Return the KB threshold for a numeric mode, None for boolean modes."""

    if isinstance(mode, bool) or mode is None:
        return None
    if isinstance(mode, (int, float)):
        return float(mode)
    return None


def evaluate_inclusion(
    match: ReferenceMatch,
    *,
    images: ImageMode = False,
    svgs: ImageMode = False,
    links: bool = True,
    scripts: bool = True,
) -> InclusionDecision:
    """Decide whether a reference should be fetched and inlined.

    Explicit markers win over every mode; opt-out beats opt-in. Only images
    and css urls are size gated.
    """

    if match.explicit_include is False:
        return InclusionDecision(False, "marker_ignore")
    if match.explicit_include is True:
        return InclusionDecision(True, "marker_include")

    if match.kind == KIND_STYLESHEET:
        return InclusionDecision(bool(links), None if links else "links_disabled")
    if match.kind == KIND_SCRIPT:
        return InclusionDecision(bool(scripts), None if scripts else "scripts_disabled")
    if match.kind not in (KIND_IMAGE, KIND_CSS_URL):
        return InclusionDecision(False, "unknown_kind")

    mode: ImageMode = images
    label = "images"
    if match.kind == KIND_IMAGE and svgs and is_svg(match.reference):
        mode = svgs
        label = "svgs"

    limit = _threshold(mode)
    if limit is None:
        return InclusionDecision(bool(mode), None if mode else f"{label}_disabled")
    if match.size_hint_kb is not None:
        if match.size_hint_kb > limit:
            return InclusionDecision(False, "size_hint_exceeds_limit")
        return InclusionDecision(True)
    # Unknown size is let through and re-checked once the payload is known.
    return InclusionDecision(True, None, size_limit_kb=limit)


def should_inline(match: ReferenceMatch, options: Any) -> bool:
    """Policy shortcut over an InlineOptions-like object."""

    return evaluate_inclusion(
        match,
        images=getattr(options, "images", False),
        svgs=getattr(options, "svgs", False),
        links=getattr(options, "links", True),
        scripts=getattr(options, "scripts", True),
    ).keep


def exceeds_size_limit(decision: InclusionDecision, encoded_length: int) -> bool:
    """True when a size-gated payload turned out larger than its threshold."""

    if decision.size_limit_kb is None:
        return False
    return encoded_length > decision.size_limit_kb * KB


__all__ = [
    "InclusionDecision",
    "evaluate_inclusion",
    "should_inline",
    "exceeds_size_limit",
]
