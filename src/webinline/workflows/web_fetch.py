from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional, Tuple
from urllib.parse import unquote, urljoin, urlparse

import aiohttp

from ..core.keys import K_FETCH_FAILED, K_FILE_NOT_FOUND
from .extract_utils import ReferenceMatch
from .inline_config import (
    DEFAULT_ACCEPT_LANGUAGE,
    DEFAULT_USER_AGENT,
    ENV_HTTP_TIMEOUT,
    ENV_MAX_ATTEMPTS,
    ENV_USER_AGENT,
    HDR_ACCEPT_LANGUAGE,
    HDR_CONTENT_TYPE,
    HDR_USER_AGENT,
)
from .inline_utils import guess_content_type, is_remote_path, strip_query

logger = logging.getLogger(__name__)

RequestTransform = Callable[[Dict[str, Any]], Optional[Dict[str, Any]]]


def _env_int(name: str, default: int) -> int:
    try:
        raw = os.getenv(name, "")
        return int(raw) if raw.strip() else default
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float) -> float:
    try:
        raw = os.getenv(name, "")
        return float(raw) if raw.strip() else default
    except (TypeError, ValueError):
        return default


@dataclass
class FetchConfig:
    """Transport parameters for resource fetching."""

    timeout: float = 20.0
    max_attempts: int = 3
    backoff_initial: float = 0.5
    backoff_max: float = 4.0
    user_agent: str = DEFAULT_USER_AGENT
    accept_language: str = DEFAULT_ACCEPT_LANGUAGE

    @classmethod
    def from_env(cls) -> "FetchConfig":
        base = cls()
        return cls(
            timeout=max(0.1, _env_float(ENV_HTTP_TIMEOUT, base.timeout)),
            max_attempts=max(1, _env_int(ENV_MAX_ATTEMPTS, base.max_attempts)),
            user_agent=os.getenv(ENV_USER_AGENT) or base.user_agent,
        )


@dataclass
class FetchOutcome:
    """Result of fetching the resource behind one reference."""

    match: ReferenceMatch
    location: str
    remote: bool
    content: Optional[bytes] = field(default=None, repr=False)
    content_type: Optional[str] = None
    # charset= parameter of a remote Content-Type header.
    charset: Optional[str] = None
    status: Optional[int] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.content is not None

    @property
    def reference(self) -> str:
        return self.match.reference


def resolve_location(reference: str, relative_to: str) -> Tuple[str, bool]:
    """Resolve a reference against the base; return ``(location, is_remote)``.

    Protocol-relative references borrow the base's scheme when the base is a
    URL and default to https otherwise.
    """

    ref = reference.strip()
    base = (relative_to or "").strip()
    base_remote = is_remote_path(base)
    if ref.startswith("//"):
        scheme = urlparse(base).scheme if base_remote else ""
        return f"{scheme or 'https'}:{ref}", True
    if is_remote_path(ref):
        return ref, True
    if base_remote:
        if base.startswith("//"):
            base = f"https:{base}"
        return urljoin(base, ref), True
    local = unquote(strip_query(ref))
    if base:
        local = local.lstrip("/\\")
    return os.path.normpath(os.path.join(base, local)), False


class ResourceFetcher:
    """Fetch referenced resources from disk or over HTTP(S)."""

    def __init__(
        self,
        config: Optional[FetchConfig] = None,
        request_transform: Optional[RequestTransform] = None,
    ) -> None:
        self.config = config or FetchConfig()
        self.request_transform = request_transform

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[aiohttp.ClientSession]:
        headers = {
            HDR_USER_AGENT: self.config.user_agent,
            HDR_ACCEPT_LANGUAGE: self.config.accept_language,
        }
        async with aiohttp.ClientSession(headers=headers) as session:
            yield session

    async def fetch_all(
        self,
        matches: Iterable[ReferenceMatch],
        relative_to: str,
    ) -> List[FetchOutcome]:
        """Fetch every match concurrently and wait for all of them.

        Outcomes come back in the order of ``matches``; failures are recorded
        on their outcome and never cancel siblings.
        """

        pending = list(matches)
        if not pending:
            return []
        resolved = [resolve_location(m.reference, relative_to) for m in pending]
        if not any(remote for _, remote in resolved):
            return list(
                await asyncio.gather(
                    *(self._fetch_resolved(m, loc, False, None) for m, (loc, _) in zip(pending, resolved))
                )
            )
        async with self._session() as session:
            return list(
                await asyncio.gather(
                    *(
                        self._fetch_resolved(m, loc, remote, session)
                        for m, (loc, remote) in zip(pending, resolved)
                    )
                )
            )

    async def fetch(self, match: ReferenceMatch, relative_to: str) -> FetchOutcome:
        location, remote = resolve_location(match.reference, relative_to)
        if not remote:
            return await self._fetch_resolved(match, location, False, None)
        async with self._session() as session:
            return await self._fetch_resolved(match, location, True, session)

    async def _fetch_resolved(
        self,
        match: ReferenceMatch,
        location: str,
        remote: bool,
        session: Optional[aiohttp.ClientSession],
    ) -> FetchOutcome:
        outcome = FetchOutcome(match=match, location=location, remote=remote)
        logger.debug("fetching %s (%s)", location, "remote" if remote else "local")
        if not remote:
            try:
                content, content_type = await asyncio.to_thread(self._fetch_from_file, Path(location))
            except OSError as exc:
                outcome.error = f"{type(exc).__name__}: {exc}"
                outcome.error_kind = K_FILE_NOT_FOUND
                return outcome
            outcome.content = content
            outcome.content_type = content_type
            return outcome

        try:
            status, content_type, charset, content = await self._fetch_with_retries(session, location)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            outcome.error = f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__
            outcome.error_kind = K_FETCH_FAILED
            return outcome
        outcome.status = status
        if not 200 <= status < 300:
            outcome.error = f"HTTP {status}"
            outcome.error_kind = K_FETCH_FAILED
            return outcome
        outcome.content = content
        outcome.content_type = content_type or guess_content_type(urlparse(location).path)
        outcome.charset = charset
        logger.debug("fetched %s (%d bytes)", location, len(content))
        return outcome

    async def _fetch_with_retries(
        self,
        session: Optional[aiohttp.ClientSession],
        url: str,
    ) -> Tuple[int, str, Optional[str], bytes]:
        delay = self.config.backoff_initial
        attempts = max(1, self.config.max_attempts)
        for attempt in range(1, attempts + 1):
            try:
                return await self._fetch_once(session, url)
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                if attempt == attempts:
                    raise
                logger.debug("retrying %s after %s (attempt %d/%d)", url, exc, attempt, attempts)
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.config.backoff_max)
        raise RuntimeError("unexpected retry state")

    async def _fetch_once(
        self,
        session: Optional[aiohttp.ClientSession],
        url: str,
    ) -> Tuple[int, str, Optional[str], bytes]:
        if session is None:
            raise aiohttp.ClientConnectionError(f"no session available for {url}")
        request: Dict[str, Any] = {
            "url": url,
            "headers": {},
            "timeout": aiohttp.ClientTimeout(total=self.config.timeout),
        }
        if self.request_transform is not None:
            transformed = self.request_transform(request)
            if transformed is not None:
                request = transformed
        target = request.pop("url", url)
        async with session.get(target, **request) as resp:
            status = resp.status
            content_type = (resp.headers.get(HDR_CONTENT_TYPE) or "").split(";")[0].strip()
            charset = resp.charset
            raw_bytes = await resp.read()
        return status, content_type, charset, raw_bytes

    def _fetch_from_file(self, local_path: Path) -> Tuple[bytes, str]:
        if not local_path.is_file():
            raise FileNotFoundError(f"Local resource not found: {local_path}")
        return local_path.read_bytes(), guess_content_type(str(local_path))


__all__ = [
    "FetchConfig",
    "FetchOutcome",
    "ResourceFetcher",
    "resolve_location",
]
