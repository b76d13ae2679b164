from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal

from starlette.datastructures import Headers

from llm_proxy.runtime.store import OperationalStore
from llm_proxy.settings import Settings
from llm_proxy.utils.url_utils import strip_trailing_slash

TARGET_URL_HEADER = "x-target-api-url"
TARGET_KEY_HEADER = "x-target-api-key"

logger = logging.getLogger("uvicorn.error")


@dataclass(slots=True)
class ResolvedTarget:
    base_url: str
    api_key: str | None
    url_source: Literal["header", "store", "default"]
    key_source: Literal["header", "default", "none"]


async def resolve_target_url(
    headers: Headers,
    store: OperationalStore | None,
    settings: Settings,
) -> tuple[str, Literal["header", "store", "default"]]:
    header_url = headers.get(TARGET_URL_HEADER, "").strip()
    if header_url:
        return strip_trailing_slash(header_url), "header"

    if store is not None:
        try:
            config = await store.get_config()
        except Exception as exc:
            logger.error("resolver_store_read_failed error=%s", exc)
        else:
            stored_url = config.get("targetApiUrl")
            if isinstance(stored_url, str) and stored_url:
                return strip_trailing_slash(stored_url), "store"

    return strip_trailing_slash(settings.target_api_url), "default"


def resolve_api_key(
    headers: Headers,
    settings: Settings,
) -> tuple[str | None, Literal["header", "default", "none"]]:
    header_key = headers.get(TARGET_KEY_HEADER, "").strip()
    if header_key:
        return header_key, "header"
    default_key = settings.target_api_key_value
    if default_key:
        return default_key, "default"
    logger.warning("proxy_missing_api_key reason=no header or default key configured")
    return None, "none"


async def resolve_target(
    headers: Headers,
    store: OperationalStore | None,
    settings: Settings,
) -> ResolvedTarget:
    base_url, url_source = await resolve_target_url(headers, store, settings)
    api_key, key_source = resolve_api_key(headers, settings)
    return ResolvedTarget(
        base_url=base_url,
        api_key=api_key,
        url_source=url_source,
        key_source=key_source,
    )
