"""Reference discovery for HTML and CSS documents.

Matching is regex based and works on the raw text; nothing is parsed into a
tree. Every match keeps its exact span in the source so the orchestrator can
substitute positionally without re-searching the document.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple

from ..core.keys import (
    K_HREF,
    K_IGNORE_SUFFIX,
    K_REL,
    K_SIZE_SUFFIX,
    K_SRC,
    KIND_CSS_URL,
    KIND_IMAGE,
    KIND_SCRIPT,
    KIND_STYLESHEET,
)
from .inline_config import DEFAULT_INLINE_ATTRIBUTE
from .inline_utils import escape_special_chars, is_inlineable_reference

LINK_RE = re.compile(r"<link\b[^>]*>", re.IGNORECASE)
# Attributes are read from the "open" group only; the closing tag is not part of them.
SCRIPT_RE = re.compile(r"(?P<open><script\b[^>]*?)(?:/>|>\s*</script\s*>)", re.IGNORECASE)
IMG_RE = re.compile(r"<img\b[^>]*>", re.IGNORECASE)
CSS_URL_RE = re.compile(
    r"""url\(\s*(?:"(?P<dq>[^"]*)"|'(?P<sq>[^']*)'|(?P<bare>[^)"'\s]*))\s*\)""",
    re.IGNORECASE,
)
ATTR_RE = re.compile(
    r"""(?P<name>[^\s"'<>/=]+)(?:\s*=\s*(?:"(?P<dq>[^"]*)"|'(?P<sq>[^']*)'|(?P<bare>[^\s"'=<>`]+)))?"""
)
_TAG_NAME_RE = re.compile(r"<[a-zA-Z][a-zA-Z0-9-]*")
_CSS_TAIL_STOP_RE = re.compile(r"\n|url\(", re.IGNORECASE)


@dataclass(frozen=True)
class TagAttribute:
    name: str
    value: Optional[str]
    value_start: int = -1
    value_end: int = -1


@dataclass(frozen=True)
class ReferenceMatch:
    """One inlineable reference found in a document."""

    raw: str
    start: int
    end: int
    reference: str
    kind: str
    # Absolute span of ``reference`` inside the document.
    value_start: int
    value_end: int
    size_hint_kb: Optional[float] = None
    explicit_include: Optional[bool] = None
    attrs: Tuple[TagAttribute, ...] = field(default=(), compare=False)

    def attr(self, name: str) -> Optional[str]:
        name = name.lower()
        for item in self.attrs:
            if item.name == name:
                return item.value
        return None

    def has_attr(self, name: str) -> bool:
        name = name.lower()
        return any(item.name == name for item in self.attrs)


def parse_tag_attributes(tag: str, offset: int = 0) -> Tuple[TagAttribute, ...]:
    """Parse the attributes of an opening tag.

    ``offset`` is the tag's position in the document; value spans are made
    absolute with it. Names are lower-cased, boolean attributes get ``None``.
    """

    head = _TAG_NAME_RE.match(tag)
    body_start = head.end() if head else 0
    body_end = len(tag)
    if tag.endswith("/>"):
        body_end -= 2
    elif tag.endswith(">"):
        body_end -= 1
    attrs: List[TagAttribute] = []
    for m in ATTR_RE.finditer(tag, body_start, body_end):
        name = m.group("name").lower()
        group = next((g for g in ("dq", "sq", "bare") if m.group(g) is not None), None)
        if group is None:
            attrs.append(TagAttribute(name, None))
            continue
        attrs.append(
            TagAttribute(
                name,
                m.group(group),
                offset + m.start(group),
                offset + m.end(group),
            )
        )
    return tuple(attrs)


def format_attributes(attrs: Iterable[TagAttribute], exclude: Iterable[str] = ()) -> str:
    """Serialize attributes back into ``' a="b" c'`` form, skipping ``exclude``."""

    skip = {name.lower() for name in exclude}
    parts: List[str] = []
    for item in attrs:
        if item.name in skip:
            continue
        if item.value is None:
            parts.append(item.name)
        elif '"' in item.value:
            parts.append(f"{item.name}='{item.value}'")
        else:
            parts.append(f'{item.name}="{item.value}"')
    return "".join(f" {part}" for part in parts)


def marker_names(inline_attribute: str) -> Tuple[str, str, str]:
    """Return the (opt-in, opt-out, size hint) attribute names."""

    base = (inline_attribute or DEFAULT_INLINE_ATTRIBUTE).lower()
    return base, base + K_IGNORE_SUFFIX, base + K_SIZE_SUFFIX


def _explicit_include(attrs: Tuple[TagAttribute, ...], inline_attribute: str) -> Optional[bool]:
    opt_in, opt_out, _ = marker_names(inline_attribute)
    names = {item.name for item in attrs}
    if opt_out in names:
        return False
    if opt_in in names:
        return True
    return None


def _size_hint(attrs: Tuple[TagAttribute, ...], inline_attribute: str) -> Optional[float]:
    _, _, size_name = marker_names(inline_attribute)
    for item in attrs:
        if item.name != size_name or item.value is None:
            continue
        try:
            return float(item.value.strip())
        except ValueError:
            return None
    return None


def _tag_reference(
    m: "re.Match[str]",
    kind: str,
    ref_attr: str,
    inline_attribute: str,
) -> Optional[ReferenceMatch]:
    group = "open" if "open" in m.re.groupindex else 0
    attrs = parse_tag_attributes(m.group(group), m.start(group))
    target = next((a for a in attrs if a.name == ref_attr and a.value is not None), None)
    if target is None:
        return None
    reference = target.value.strip()
    if not is_inlineable_reference(reference):
        return None
    # Keep the span on the stripped value so surrounding whitespace survives.
    lead = len(target.value) - len(target.value.lstrip())
    value_start = target.value_start + lead
    return ReferenceMatch(
        raw=m.group(0),
        start=m.start(),
        end=m.end(),
        reference=reference,
        kind=kind,
        value_start=value_start,
        value_end=value_start + len(reference),
        size_hint_kb=_size_hint(attrs, inline_attribute) if kind == KIND_IMAGE else None,
        explicit_include=_explicit_include(attrs, inline_attribute),
        attrs=attrs,
    )


def _is_stylesheet(match: ReferenceMatch) -> bool:
    rel = match.attr(K_REL) or ""
    return "stylesheet" in rel.lower().split()


def _drop_overlaps(matches: Iterable[ReferenceMatch]) -> List[ReferenceMatch]:
    kept: List[ReferenceMatch] = []
    last_end = -1
    for match in sorted(matches, key=lambda item: (item.start, -item.end)):
        if match.start < last_end:
            continue
        kept.append(match)
        last_end = match.end
    return kept


def extract_html_references(
    text: str,
    inline_attribute: str = DEFAULT_INLINE_ATTRIBUTE,
) -> List[ReferenceMatch]:
    """Find stylesheet links, external scripts and images in HTML text."""

    found: List[ReferenceMatch] = []
    for m in LINK_RE.finditer(text):
        match = _tag_reference(m, KIND_STYLESHEET, K_HREF, inline_attribute)
        if match is not None and _is_stylesheet(match):
            found.append(match)
    for m in SCRIPT_RE.finditer(text):
        match = _tag_reference(m, KIND_SCRIPT, K_SRC, inline_attribute)
        if match is not None:
            found.append(match)
    for m in IMG_RE.finditer(text):
        match = _tag_reference(m, KIND_IMAGE, K_SRC, inline_attribute)
        if match is not None:
            found.append(match)
    return _drop_overlaps(found)


def _css_markers(inline_attribute: str) -> Tuple["re.Pattern[str]", "re.Pattern[str]"]:
    opt_in, opt_out, _ = marker_names(inline_attribute)
    comment = r"/\*\s*{}\s*\*/"
    return (
        re.compile(comment.format(escape_special_chars(opt_in)), re.IGNORECASE),
        re.compile(comment.format(escape_special_chars(opt_out)), re.IGNORECASE),
    )


def extract_css_references(
    text: str,
    inline_attribute: str = DEFAULT_INLINE_ATTRIBUTE,
) -> List[ReferenceMatch]:
    """Find ``url(...)`` references in CSS text.

    A ``/* <attr> */`` or ``/* <attr>-ignore */`` comment following the url on
    the same line marks it as opted in or out.
    """

    opt_in_re, opt_out_re = _css_markers(inline_attribute)
    found: List[ReferenceMatch] = []
    for m in CSS_URL_RE.finditer(text):
        group = next(g for g in ("dq", "sq", "bare") if m.group(g) is not None)
        value = m.group(group)
        reference = value.strip()
        if not is_inlineable_reference(reference):
            continue
        stop = _CSS_TAIL_STOP_RE.search(text, m.end())
        tail = text[m.end(): stop.start() if stop else len(text)]
        explicit: Optional[bool] = None
        if opt_out_re.search(tail):
            explicit = False
        elif opt_in_re.search(tail):
            explicit = True
        value_start = m.start(group) + (len(value) - len(value.lstrip()))
        found.append(
            ReferenceMatch(
                raw=m.group(0),
                start=m.start(),
                end=m.end(),
                reference=reference,
                kind=KIND_CSS_URL,
                value_start=value_start,
                value_end=value_start + len(reference),
                explicit_include=explicit,
            )
        )
    return _drop_overlaps(found)


__all__ = [
    "ReferenceMatch",
    "TagAttribute",
    "parse_tag_attributes",
    "format_attributes",
    "marker_names",
    "extract_html_references",
    "extract_css_references",
]
