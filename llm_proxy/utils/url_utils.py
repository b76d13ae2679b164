from __future__ import annotations


def strip_trailing_slash(url: str) -> str:
    """Drop exactly one trailing slash, leaving the rest of the URL alone."""
    if url.endswith("/"):
        return url[:-1]
    return url


def join_upstream_url(base_url: str, path: str, query: str | None = None) -> str:
    url = f"{base_url}{path}"
    if query:
        url = f"{url}?{query}"
    return url
