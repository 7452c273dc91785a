"""Resource inlining for HTML and CSS documents.

``inline_html``/``inline_css`` are the coroutine entry points; ``html``/``css``
wrap them in the ``callback(error, text)`` contract and never raise.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import os
import re
from dataclasses import dataclass, field, fields, replace
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from ..core.keys import (
    K_HREF,
    K_REL,
    K_SRC,
    K_TYPE,
    KIND_CSS_URL,
    KIND_IMAGE,
    KIND_SCRIPT,
    KIND_STYLESHEET,
)
from .extract_utils import (
    ReferenceMatch,
    extract_css_references,
    extract_html_references,
    format_attributes,
    marker_names,
)
from .inline_config import DEFAULT_INLINE_ATTRIBUTE
from .inline_utils import decode_text, is_svg, rebase_reference
from .prefilters import ImageMode, InclusionDecision, evaluate_inclusion, exceeds_size_limit
from .web_fetch import FetchConfig, FetchOutcome, RequestTransform, ResourceFetcher

logger = logging.getLogger(__name__)

Transform = Callable[[str, str], Optional[str]]
WarnSink = Callable[[str], None]
Callback = Callable[[Optional[Exception], str], Any]
Replacement = Tuple[int, int, str]

_OPTION_ALIASES = {
    "fileContent": "file_content",
    "relativeTo": "relative_to",
    "rebaseRelativeTo": "rebase_relative_to",
    "inlineAttribute": "inline_attribute",
    "linkTransform": "link_transform",
    "scriptTransform": "script_transform",
    "requestTransform": "request_transform",
    "fetchConfig": "fetch_config",
}
_STYLE_CLOSE_RE = re.compile(r"</(style)", re.IGNORECASE)
_SCRIPT_CLOSE_RE = re.compile(r"</(script)", re.IGNORECASE)


class InlineError(Exception):
    """Aggregate error for references that could not be fetched."""

    def __init__(self, failures: List[FetchOutcome]) -> None:
        self.failures = list(failures)
        details = "; ".join(f"{item.reference}: {item.error}" for item in self.failures)
        super().__init__(f"Failed to inline {len(self.failures)} resource(s): {details}")


@dataclass(frozen=True)
class InlineOptions:
    """Input for one inlining call."""

    file_content: str
    relative_to: str = ""
    images: ImageMode = False
    svgs: ImageMode = False
    links: bool = True
    scripts: bool = True
    strict: bool = False
    inline_attribute: str = DEFAULT_INLINE_ATTRIBUTE
    rebase_relative_to: str = ""
    link_transform: Optional[Transform] = None
    script_transform: Optional[Transform] = None
    request_transform: Optional[RequestTransform] = None
    fetch_config: Optional[FetchConfig] = None
    warn: Optional[WarnSink] = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if not isinstance(self.file_content, str):
            raise TypeError("file_content must be a string")
        if not isinstance(self.relative_to, str):
            raise TypeError("relative_to must be a string")
        for name in ("images", "svgs"):
            value = getattr(self, name)
            if isinstance(value, bool):
                continue
            if not isinstance(value, (int, float)) or value < 0:
                raise ValueError(f"{name} must be a boolean or a non-negative KB threshold")
        if not self.inline_attribute:
            raise ValueError("inline_attribute must not be empty")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "InlineOptions":
        """Build options from snake_case or camelCase keys; unknown keys are ignored."""

        known = {f.name for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, value in data.items():
            name = _OPTION_ALIASES.get(key, key)
            if name not in known:
                logger.debug("ignoring unknown option %s", key)
                continue
            kwargs[name] = value
        if "file_content" not in kwargs:
            raise ValueError("file_content is required")
        return cls(**kwargs)

    def emit_warning(self, message: str) -> None:
        (self.warn or logger.warning)(message)


@dataclass
class InlineResult:
    text: str
    error: Optional[InlineError] = None
    outcomes: List[FetchOutcome] = field(default_factory=list, repr=False)


OptionsLike = Union[InlineOptions, Mapping[str, Any]]


def _coerce_options(options: OptionsLike) -> InlineOptions:
    if isinstance(options, InlineOptions):
        return options
    if isinstance(options, Mapping):
        return InlineOptions.from_mapping(options)
    raise TypeError(f"options must be InlineOptions or a mapping, not {type(options).__name__}")


def _make_fetcher(opts: InlineOptions) -> ResourceFetcher:
    return ResourceFetcher(opts.fetch_config or FetchConfig.from_env(), opts.request_transform)


def apply_replacements(text: str, replacements: List[Replacement]) -> str:
    """Splice ``(start, end, new_text)`` replacements into ``text`` in one pass.

    New text is inserted literally; spans must not overlap.
    """

    parts: List[str] = []
    cursor = 0
    for start, end, new_text in sorted(replacements, key=lambda item: item[0]):
        if start < cursor:
            raise ValueError(f"overlapping replacement at {start}")
        parts.append(text[cursor:start])
        parts.append(new_text)
        cursor = end
    parts.append(text[cursor:])
    return "".join(parts)


def _data_uri(outcome: FetchOutcome) -> str:
    payload = base64.b64encode(outcome.content or b"").decode("ascii")
    return f"data:{outcome.content_type};base64,{payload}"


def _marker_attrs(opts: InlineOptions) -> Tuple[str, str, str]:
    return marker_names(opts.inline_attribute)


def _transform(hook: Optional[Transform], content: str, location: str) -> str:
    if hook is None:
        return content
    result = hook(content, location)
    return content if result is None else result


def _svg_markup(svg_text: str, match: ReferenceMatch, opts: InlineOptions) -> Optional[str]:
    soup = BeautifulSoup(svg_text, "xml")
    svg = soup.find("svg")
    if svg is None:
        return None
    skip = {K_SRC, "alt", *_marker_attrs(opts)}
    for item in match.attrs:
        if item.name in skip:
            continue
        svg[item.name] = "" if item.value is None else item.value
    return str(svg)


def _nested_locations(opts: InlineOptions, outcome: FetchOutcome) -> Tuple[str, str]:
    """Return (relative_to, rebase_relative_to) for a stylesheet's own url()s."""

    if outcome.remote:
        sheet_dir = urljoin(outcome.location, ".")
        return sheet_dir, sheet_dir
    sheet_dir = os.path.dirname(outcome.location)
    rebase = os.path.relpath(sheet_dir or ".", opts.relative_to or ".").replace(os.sep, "/")
    return sheet_dir, "" if rebase == "." else rebase


async def _stylesheet_replacement(
    match: ReferenceMatch,
    outcome: FetchOutcome,
    opts: InlineOptions,
    fetcher: ResourceFetcher,
) -> Tuple[Replacement, List[FetchOutcome]]:
    css_text = decode_text(outcome.content or b"", outcome.charset)
    relative_to, rebase_to = _nested_locations(opts, outcome)
    nested = replace(
        opts,
        file_content=css_text,
        relative_to=relative_to,
        rebase_relative_to=rebase_to,
    )
    css_text, _, failures = await _process(nested, extract_css_references(css_text, opts.inline_attribute), fetcher, css=True)
    css_text = _transform(opts.link_transform, css_text, outcome.location)
    body = _STYLE_CLOSE_RE.sub(lambda m: "<\\/" + m.group(1), css_text)
    attrs = format_attributes(match.attrs, exclude=(K_HREF, K_REL, K_TYPE, *_marker_attrs(opts)))
    return (match.start, match.end, f"<style{attrs}>\n{body}\n</style>"), failures


def _script_replacement(match: ReferenceMatch, outcome: FetchOutcome, opts: InlineOptions) -> Replacement:
    js_text = decode_text(outcome.content or b"", outcome.charset)
    js_text = _transform(opts.script_transform, js_text, outcome.location)
    body = _SCRIPT_CLOSE_RE.sub(lambda m: "<\\/" + m.group(1), js_text)
    attrs = format_attributes(match.attrs, exclude=(K_SRC, *_marker_attrs(opts)))
    return match.start, match.end, f"<script{attrs}>\n{body}\n</script>"


def _asset_replacement(
    match: ReferenceMatch,
    decision: InclusionDecision,
    outcome: FetchOutcome,
    opts: InlineOptions,
) -> Optional[Replacement]:
    if (
        match.kind == KIND_IMAGE
        and opts.svgs
        and match.explicit_include is not True
        and is_svg(match.reference, outcome.content_type)
    ):
        svg_text = decode_text(outcome.content or b"", outcome.charset)
        if exceeds_size_limit(decision, len(svg_text)):
            logger.debug("svg %s exceeds %s KB, leaving reference", match.reference, decision.size_limit_kb)
            return None
        markup = _svg_markup(svg_text, match, opts)
        if markup is not None:
            return match.start, match.end, markup
    uri = _data_uri(outcome)
    if exceeds_size_limit(decision, len(uri)):
        logger.debug("%s exceeds %s KB, leaving reference", match.reference, decision.size_limit_kb)
        return None
    return match.value_start, match.value_end, uri


async def _process(
    opts: InlineOptions,
    matches: List[ReferenceMatch],
    fetcher: ResourceFetcher,
    *,
    css: bool,
) -> Tuple[str, List[FetchOutcome], List[FetchOutcome]]:
    """Run filter, fetch-all, build and substitute; return (text, outcomes, failures)."""

    approved: List[Tuple[ReferenceMatch, InclusionDecision]] = []
    for match in matches:
        decision = evaluate_inclusion(
            match,
            images=opts.images,
            svgs=opts.svgs,
            links=opts.links,
            scripts=opts.scripts,
        )
        if decision.keep:
            approved.append((match, decision))
        else:
            logger.debug("skipping %s (%s)", match.reference, decision.reason)
    logger.debug("%d reference(s) found, %d approved", len(matches), len(approved))

    outcomes = await fetcher.fetch_all([match for match, _ in approved], opts.relative_to)

    replacements: List[Replacement] = []
    failures: List[FetchOutcome] = []
    inlined: set = set()
    stylesheets: List[Tuple[ReferenceMatch, FetchOutcome]] = []
    for (match, decision), outcome in zip(approved, outcomes):
        if not outcome.ok:
            failures.append(outcome)
            continue
        replacement: Optional[Replacement]
        if match.kind == KIND_STYLESHEET:
            stylesheets.append((match, outcome))
            continue
        if match.kind == KIND_SCRIPT:
            replacement = _script_replacement(match, outcome, opts)
        else:
            replacement = _asset_replacement(match, decision, outcome, opts)
        if replacement is not None:
            replacements.append(replacement)
            inlined.add(match.start)

    # Nested url() passes of all stylesheets run side by side.
    built = await asyncio.gather(
        *(_stylesheet_replacement(match, outcome, opts, fetcher) for match, outcome in stylesheets)
    )
    for (match, _), (replacement, nested_failures) in zip(stylesheets, built):
        replacements.append(replacement)
        inlined.add(match.start)
        failures.extend(nested_failures)

    if css and opts.rebase_relative_to:
        for match in matches:
            if match.kind != KIND_CSS_URL or match.start in inlined:
                continue
            rebased = rebase_reference(match.reference, opts.rebase_relative_to)
            if rebased != match.reference:
                replacements.append((match.value_start, match.value_end, rebased))

    return apply_replacements(opts.file_content, replacements), outcomes, failures


def _finish(
    opts: InlineOptions,
    text: str,
    outcomes: List[FetchOutcome],
    failures: List[FetchOutcome],
) -> InlineResult:
    if not failures:
        return InlineResult(text=text, outcomes=outcomes)
    if opts.strict:
        return InlineResult(text=text, error=InlineError(failures), outcomes=outcomes)
    for item in failures:
        opts.emit_warning(f"Not inlining {item.reference}: {item.error}")
    return InlineResult(text=text, outcomes=outcomes)


async def inline_html(
    options: OptionsLike,
    *,
    fetcher: Optional[ResourceFetcher] = None,
) -> InlineResult:
    """Inline stylesheets, scripts and images referenced by an HTML document."""

    opts = _coerce_options(options)
    matches = extract_html_references(opts.file_content, opts.inline_attribute)
    text, outcomes, failures = await _process(opts, matches, fetcher or _make_fetcher(opts), css=False)
    return _finish(opts, text, outcomes, failures)


async def inline_css(
    options: OptionsLike,
    *,
    fetcher: Optional[ResourceFetcher] = None,
) -> InlineResult:
    """Inline ``url()`` references of a CSS document as data URIs."""

    opts = _coerce_options(options)
    matches = extract_css_references(opts.file_content, opts.inline_attribute)
    text, outcomes, failures = await _process(opts, matches, fetcher or _make_fetcher(opts), css=True)
    return _finish(opts, text, outcomes, failures)


def _fallback_text(options: Any) -> str:
    if isinstance(options, InlineOptions):
        return options.file_content
    if isinstance(options, Mapping):
        value = options.get("file_content", options.get("fileContent", ""))
        return value if isinstance(value, str) else ""
    return ""


def _run_with_callback(
    runner: Callable[..., Any],
    options: OptionsLike,
    callback: Optional[Callback],
    fetcher: Optional[ResourceFetcher],
) -> Tuple[Optional[Exception], str]:
    try:
        result: InlineResult = asyncio.run(runner(options, fetcher=fetcher))
        error: Optional[Exception] = result.error
        text = result.text
    except Exception as exc:  # delivered through the callback contract
        logger.debug("inlining failed: %s", exc)
        error, text = exc, _fallback_text(options)
    if callback is not None:
        callback(error, text)
    return error, text


def html(
    options: OptionsLike,
    callback: Optional[Callback] = None,
    *,
    fetcher: Optional[ResourceFetcher] = None,
) -> Tuple[Optional[Exception], str]:
    """Callback form of :func:`inline_html`; returns ``(error, text)`` as well.

    Must not be called from inside a running event loop; await
    :func:`inline_html` there instead.
    """

    return _run_with_callback(inline_html, options, callback, fetcher)


def css(
    options: OptionsLike,
    callback: Optional[Callback] = None,
    *,
    fetcher: Optional[ResourceFetcher] = None,
) -> Tuple[Optional[Exception], str]:
    """Callback form of :func:`inline_css`; returns ``(error, text)`` as well."""

    return _run_with_callback(inline_css, options, callback, fetcher)


__all__ = [
    "InlineError",
    "InlineOptions",
    "InlineResult",
    "apply_replacements",
    "inline_html",
    "inline_css",
    "html",
    "css",
]
