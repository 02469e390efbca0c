"""
web/pages.py -- Jinja2 renderer for the pages served by the OAuth routes.

The OAuth flow ends in a browser, so its outcomes (login success, logout,
unknown invite, failures) are small HTML pages rather than JSON. All of them
share templates/auth.html; autoescaping is on for .html templates, so user
controlled values (redirect target, avatar URL) are escaped.

Layer rule: no imports from api/, auth/, or cache/.
"""

from __future__ import annotations

from pathlib import Path

from fastapi import Request
from fastapi.responses import HTMLResponse
from fastapi.templating import Jinja2Templates

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))

# Seconds before a success page follows its redirect on its own.
_REFRESH_SECONDS = 1


class PageRenderer:
    """Render outcome pages. Injected into OAuthService so tests can swap it."""

    def __init__(self, title: str = "Authentication") -> None:
        self._title = title

    def _render(
        self,
        request: Request,
        status_code: int,
        message: str,
        level: str,
        redirect: str = "",
        image: str = "",
        refresh: int = 0,
    ) -> HTMLResponse:
        response = templates.TemplateResponse(
            request,
            "auth.html",
            {
                "title": self._title,
                "message": message,
                "level": level,
                "redirect": redirect,
                "image": image,
                "refresh": refresh,
            },
            status_code=status_code,
        )
        response.headers["Cache-Control"] = "no-store"
        return response

    def success(self, request: Request, message: str, redirect: str = "", image: str = "") -> HTMLResponse:
        return self._render(request, 200, message, "success", redirect, image, _REFRESH_SECONDS if redirect else 0)

    def error(self, request: Request, status_code: int, message: str, redirect: str = "") -> HTMLResponse:
        return self._render(request, status_code, message, "error", redirect)
