"""HTTP reachability checks for url_reference claims."""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

import httpx

from docdrift.config import UrlCheckConfig

logger = logging.getLogger(__name__)

USER_AGENT = "docdrift-url-check/0.1"


@dataclass
class UrlCheckOutcome:
    """Outcome of one URL check.

    ``status_code`` is None when the request never produced a response;
    ``rate_limited`` is set when the per-domain cap was hit.
    """
    url: str
    status_code: Optional[int] = None
    error: Optional[str] = None
    rate_limited: bool = False


def url_domain(url: str) -> str:
    return (urlparse(url).hostname or "").lower()


class UrlChecker:
    """Checks URLs with HEAD (GET on 405), capped per domain for one scan."""

    def __init__(self, config: Optional[UrlCheckConfig] = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or UrlCheckConfig()
        self.client = client
        self.domain_counts: dict[str, int] = {}

    def is_excluded(self, url: str) -> bool:
        domain = url_domain(url)
        for excluded in self.config.exclude_domains:
            excluded = excluded.lower()
            if domain == excluded or domain.endswith("." + excluded):
                return True
        return False

    async def check(self, url: str) -> UrlCheckOutcome:
        domain = url_domain(url)
        count = self.domain_counts.get(domain, 0)
        if count >= self.config.max_per_domain:
            return UrlCheckOutcome(url=url, rate_limited=True)
        self.domain_counts[domain] = count + 1

        timeout = self.config.timeout_ms / 1000.0
        try:
            if self.client is not None:
                return await self._request(self.client, url, timeout)
            async with httpx.AsyncClient(
                follow_redirects=True,
                headers={"User-Agent": USER_AGENT},
            ) as client:
                return await self._request(client, url, timeout)
        except httpx.HTTPError as e:
            logger.debug(f"URL check failed for {url}: {e}")
            return UrlCheckOutcome(url=url, error=str(e) or type(e).__name__)

    async def _request(self, client: httpx.AsyncClient, url: str, timeout: float) -> UrlCheckOutcome:
        response = await client.head(url, timeout=timeout, follow_redirects=True)
        if response.status_code == 405:
            response = await client.get(url, timeout=timeout, follow_redirects=True)
        return UrlCheckOutcome(url=url, status_code=response.status_code)

    def reset(self) -> None:
        """Start a new scan's per-domain counts."""
        self.domain_counts.clear()
