"""Shared helper functions used by the inliner workflow."""

from __future__ import annotations

import logging
import mimetypes
import posixpath
import re
from typing import Optional
from urllib.parse import urljoin, urlparse

from charset_normalizer import from_bytes

from .inline_config import EXTRA_CONTENT_TYPES, FALLBACK_CONTENT_TYPE, REMOTE_SCHEMES

logger = logging.getLogger(__name__)

_SPECIAL_CHARS_RE = re.compile(r"[.*+?^${}()|\[\]\\/]")
_QUERY_OR_FRAGMENT_RE = re.compile(r"[?#].*$", re.DOTALL)


def escape_special_chars(value: str) -> str:
    """Backslash-escape every regex metacharacter (and ``/``) in ``value``."""

    return _SPECIAL_CHARS_RE.sub(r"\\\g<0>", value)


def is_remote_path(reference: str) -> bool:
    """True for ``http(s)://`` URLs and protocol-relative ``//host/path``."""

    ref = (reference or "").strip()
    if ref.startswith("//"):
        return True
    scheme = urlparse(ref).scheme.lower()
    return scheme in REMOTE_SCHEMES


def is_data_uri(reference: str) -> bool:
    return (reference or "").strip().lower().startswith("data:")


def is_inlineable_reference(reference: str) -> bool:
    """Return False for references that never point at a fetchable resource."""

    ref = (reference or "").strip()
    if not ref or ref.startswith("#"):
        return False
    if is_data_uri(ref):
        return False
    scheme = urlparse(ref).scheme.lower()
    # Windows drive letters parse as one-letter schemes.
    if scheme and len(scheme) > 1 and scheme not in REMOTE_SCHEMES:
        return False
    return True


def strip_query(reference: str) -> str:
    """Drop ``?query`` and ``#fragment`` parts from a local path."""

    return _QUERY_OR_FRAGMENT_RE.sub("", reference)


def guess_content_type(path: str) -> str:
    path = strip_query(path)
    ext = posixpath.splitext(path.lower())[1]
    if ext in EXTRA_CONTENT_TYPES:
        return EXTRA_CONTENT_TYPES[ext]
    guessed, _ = mimetypes.guess_type(path)
    return guessed or FALLBACK_CONTENT_TYPE


def is_svg(reference: str, content_type: Optional[str] = None) -> bool:
    if content_type and "svg" in content_type.lower():
        return True
    return posixpath.splitext(strip_query(reference).lower())[1] == ".svg"


def rebase_reference(reference: str, rebase_to: str) -> str:
    """Rewrite a relative reference so it resolves from ``rebase_to`` instead.

    Remote, absolute, data and fragment references are returned unchanged.
    """

    ref = reference.strip()
    if not rebase_to or not is_inlineable_reference(ref):
        return reference
    if is_remote_path(ref) or ref.startswith("/"):
        return reference
    if is_remote_path(rebase_to):
        base = rebase_to if rebase_to.endswith("/") else rebase_to + "/"
        return urljoin(base, ref)
    return posixpath.normpath(posixpath.join(rebase_to.replace("\\", "/"), ref))


def decode_text(payload: bytes, charset: Optional[str] = None) -> str:
    """Decode a text resource and drop a leading BOM.

    A declared ``charset`` wins; otherwise UTF-8 is tried before
    charset-normalizer guesses.
    """

    text = None
    if charset:
        try:
            text = payload.decode(charset.strip(" \"'").lower(), errors="replace")
        except LookupError:
            logger.debug("unknown charset %s, guessing instead", charset)
    if text is None:
        try:
            text = payload.decode("utf-8")
        except UnicodeDecodeError:
            best = from_bytes(payload).best()
            text = str(best) if best is not None else payload.decode("utf-8", "replace")
    if text.startswith("\ufeff"):
        text = text[1:]
    return text


def sanity_check() -> None:
    url = "http://fonts.googleapis.com/css?family=Open+Sans"
    escaped = escape_special_chars(url)
    assert escaped == "http:\\/\\/fonts\\.googleapis\\.com\\/css\\?family=Open\\+Sans"
    assert len(re.findall(escaped, url)) == 1
    assert is_remote_path("//cdn.example.com/a.css")
    assert not is_remote_path("css/a.css")
    assert rebase_reference("../img/a.png", "css") == "img/a.png"
    assert rebase_reference("a.png", "https://cdn.example.com/css") == "https://cdn.example.com/css/a.png"


sanity_check()

__all__ = [
    "escape_special_chars",
    "is_remote_path",
    "is_data_uri",
    "is_inlineable_reference",
    "strip_query",
    "guess_content_type",
    "is_svg",
    "rebase_reference",
    "decode_text",
    "sanity_check",
]
