"""Well-known address resolver.

Resolves a domain to its stable content address by fetching
``https://<domain>/.well-known/dat``. The file's first line holds the
address URL (``dat://<64 hex chars>``); an optional ``TTL=<seconds>`` line
controls how long the answer may be cached.
"""

import asyncio
import logging
import random
import re
import time
from dataclasses import dataclass
from typing import Dict, Optional

import aiohttp

from .errors import NameResolutionError

logger = logging.getLogger(__name__)

WELL_KNOWN_PATH = '/.well-known/dat'
ADDRESS_PATTERN = re.compile(r'^[0-9a-f]{64}$', re.IGNORECASE)
DEFAULT_TTL = 3600


@dataclass
class ResolvedAddress:
    """Cache entry for a resolved domain."""
    address: str
    fetched_at: float
    ttl: int = DEFAULT_TTL

    def is_expired(self) -> bool:
        return time.time() - self.fetched_at > self.ttl


def parse_well_known(body: str) -> Optional[ResolvedAddress]:
    """Parse a well-known file. Returns None when no address is present."""
    lines = [line.strip() for line in body.splitlines() if line.strip()]
    if not lines:
        return None

    match = re.match(r'^(?:dat://)?([0-9a-f]{64})/?$', lines[0], re.IGNORECASE)
    if not match:
        return None

    ttl = DEFAULT_TTL
    for line in lines[1:]:
        if line.upper().startswith('TTL='):
            try:
                ttl = max(0, int(line[4:]))
            except ValueError:
                logger.debug(f"Ignoring invalid TTL line: {line}")
    return ResolvedAddress(address=match.group(1).lower(), fetched_at=time.time(), ttl=ttl)


class WellKnownResolver:
    """Asynchronous domain resolver with retry and caching."""

    def __init__(self,
                 request_timeout: float = 10.0,
                 max_retries: int = 2,
                 retry_delay: float = 0.5,
                 max_retry_delay: float = 8.0,
                 scheme: str = 'https'):
        """Initialize resolver.

        Args:
            request_timeout: Request timeout in seconds
            max_retries: Maximum number of retry attempts
            retry_delay: Base delay between retries (seconds)
            max_retry_delay: Maximum delay between retries (seconds)
            scheme: URL scheme used to reach the well-known file
        """
        self.request_timeout = request_timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.max_retry_delay = max_retry_delay
        self.scheme = scheme
        self.session: Optional[aiohttp.ClientSession] = None
        self._cache: Dict[str, ResolvedAddress] = {}

    @classmethod
    def from_config(cls, config) -> 'WellKnownResolver':
        """Build a resolver from an ``IndexerConfig``."""
        return cls(
            request_timeout=config.resolver_timeout,
            max_retries=config.resolver_max_retries,
            retry_delay=config.resolver_retry_delay,
            scheme=config.resolver_scheme
        )

    async def __aenter__(self):
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _ensure_session(self):
        if not self.session:
            timeout = aiohttp.ClientTimeout(total=self.request_timeout)
            self.session = aiohttp.ClientSession(timeout=timeout)

    async def close(self):
        """Close the resolver session."""
        if self.session:
            await self.session.close()
            self.session = None

    def clear_cache(self):
        self._cache.clear()

    def _calculate_retry_delay(self, attempt: int) -> float:
        """Calculate exponential backoff delay with jitter."""
        base_delay = self.retry_delay * (2 ** attempt)
        jitter = random.uniform(0.1, 0.3) * base_delay
        return min(base_delay + jitter, self.max_retry_delay)

    async def resolve_address(self, domain: str) -> str:
        """Resolve ``domain`` to a 64-character hex address."""
        if ADDRESS_PATTERN.match(domain):
            return domain.lower()

        cached = self._cache.get(domain)
        if cached and not cached.is_expired():
            logger.debug(f"Using cached address for {domain}")
            return cached.address

        await self._ensure_session()
        url = f"{self.scheme}://{domain}{WELL_KNOWN_PATH}"
        last_error = "unknown error"

        for attempt in range(self.max_retries + 1):
            try:
                async with self.session.get(url, allow_redirects=True) as response:
                    if response.status in {408, 429, 500, 502, 503, 504} and attempt < self.max_retries:
                        delay = self._calculate_retry_delay(attempt)
                        logger.warning(f"Retryable status {response.status} for {url}, retrying in {delay:.2f}s")
                        await asyncio.sleep(delay)
                        continue

                    if response.status != 200:
                        raise NameResolutionError(domain, f"HTTP {response.status} from {url}")

                    resolved = parse_well_known(await response.text())
                    if resolved is None:
                        raise NameResolutionError(domain, f"no address in {url}")

                    self._cache[domain] = resolved
                    logger.info(f"Resolved {domain} to {resolved.address[:8]}.. (ttl={resolved.ttl}s)")
                    return resolved.address

            except (asyncio.TimeoutError, aiohttp.ClientError) as e:
                last_error = str(e) or type(e).__name__
                if attempt < self.max_retries:
                    delay = self._calculate_retry_delay(attempt)
                    logger.warning(f"Error resolving {domain}: {last_error}, retrying in {delay:.2f}s "
                                   f"(attempt {attempt + 1}/{self.max_retries + 1})")
                    await asyncio.sleep(delay)
                    continue
                break

        raise NameResolutionError(domain, last_error)
