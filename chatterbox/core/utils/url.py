# chatterbox/core/utils/url.py
"""URL helpers for safe logging."""

from __future__ import annotations

from urllib.parse import urlparse, urlunparse


def mask_database_url(url: str) -> str:
    """Mask the password in a database URL for logging.

    Falls back to string manipulation when the URL cannot be parsed.
    """
    try:
        parsed = urlparse(url)
        password = parsed.password
    except ValueError:
        if '@' not in url:
            return url
        pre, post = url.split('@', 1)
        scheme_user = pre.rsplit(':', 1)[0]
        return f'{scheme_user}:***@{post}'

    if not password:
        return url
    netloc = parsed.netloc.replace(f':{password}@', ':***@')
    return urlunparse(
        (
            parsed.scheme,
            netloc,
            parsed.path,
            parsed.params,
            parsed.query,
            parsed.fragment,
        ),
    )
