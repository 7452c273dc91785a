"""Shared names to avoid magic strings across webinline modules."""

from __future__ import annotations

# Reference kinds
KIND_STYLESHEET = "stylesheet"
KIND_SCRIPT = "script"
KIND_IMAGE = "image"
KIND_CSS_URL = "css_url"

# Outcome error kinds
K_FILE_NOT_FOUND = "file_not_found"
K_FETCH_FAILED = "fetch_failed"

# Tag attributes
K_HREF = "href"
K_SRC = "src"
K_REL = "rel"
K_TYPE = "type"

# Marker suffixes appended to the configured inline attribute
K_IGNORE_SUFFIX = "-ignore"
K_SIZE_SUFFIX = "-size"
