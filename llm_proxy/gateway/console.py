from __future__ import annotations

import logging
from pathlib import Path

from fastapi.responses import HTMLResponse

ADMIN_CONSOLE_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Content-Security-Policy": (
        "default-src 'self'; script-src 'self' 'unsafe-inline'; "
        "style-src 'self' 'unsafe-inline';"
    ),
}

FALLBACK_ADMIN_HTML = """<!DOCTYPE html>
<html>
<head>
    <title>LLM API Proxy Admin</title>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1">
</head>
<body>
    <div id="app">
        <h1>LLM API Proxy Admin</h1>
        <p>The admin console is enabled but its HTML document could not be loaded.</p>
        <p>Set ADMIN_HTML_PATH to a readable file to serve the full console.</p>
    </div>
</body>
</html>"""

logger = logging.getLogger("uvicorn.error")


def load_admin_html(path: str | None) -> str:
    if not path:
        return FALLBACK_ADMIN_HTML
    try:
        return Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        logger.error("admin_console_load_failed path=%s error=%s", path, exc)
        return FALLBACK_ADMIN_HTML


def admin_console_response(path: str | None) -> HTMLResponse:
    return HTMLResponse(
        content=load_admin_html(path),
        headers=ADMIN_CONSOLE_HEADERS,
        media_type="text/html; charset=utf-8",
    )
