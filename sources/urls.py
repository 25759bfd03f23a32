"""URL and domain helpers for site addressing."""

import re
from urllib.parse import urlparse

from .errors import InvalidDomainError

DEFAULT_SCHEME = 'dat'

_HOSTNAME_PATTERN = re.compile(
    r'^(?=.{1,253}$)'
    r'(?:[a-z0-9](?:[a-z0-9-]*[a-z0-9])?)'
    r'(?:\.[a-z0-9](?:[a-z0-9-]*[a-z0-9])?)*$'
)


def to_domain(url: str) -> str:
    """Extract the lower-cased hostname from a URL or bare domain.

    Accepts ``dat://example.com/path``, ``https://example.com`` and
    ``example.com``. Raises InvalidDomainError when no valid hostname
    can be found.
    """
    if not isinstance(url, str) or not url.strip():
        raise InvalidDomainError(f"Invalid site url: {url!r}")

    candidate = url.strip()
    if '://' not in candidate:
        candidate = f"{DEFAULT_SCHEME}://{candidate}"

    try:
        hostname = urlparse(candidate).hostname
    except ValueError as e:
        raise InvalidDomainError(f"Invalid site url: {url!r}") from e

    if not hostname or not _HOSTNAME_PATTERN.match(hostname):
        raise InvalidDomainError(f"Invalid site url: {url!r}")
    return hostname


def to_url(url: str, scheme: str = DEFAULT_SCHEME) -> str:
    """Normalize a URL or bare domain to ``<scheme>://<domain>``."""
    return f"{scheme}://{to_domain(url)}"


def normalize_path(path: str) -> str:
    """Use forward slashes and a single leading slash."""
    path = path.replace('\\', '/')
    if not path.startswith('/'):
        path = '/' + path
    return re.sub(r'/{2,}', '/', path)
