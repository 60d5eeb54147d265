"""
Minimal HTML shells for the admin area.

The real dashboard is rendered elsewhere; these pages exist so the admission
middleware has concrete targets for its login redirects.
"""
from __future__ import annotations

import html

from fastapi import APIRouter, Request
from fastapi.responses import HTMLResponse

router = APIRouter(tags=["pages"], include_in_schema=False)

_PAGE = """<!doctype html>
<html lang="en">
<head><meta charset="utf-8"><title>{title}</title></head>
<body data-page="{page}">{body}</body>
</html>
"""


@router.get("/admin/login", response_class=HTMLResponse)
def login_page() -> str:
    return _PAGE.format(
        title="Admin login",
        page="admin-login",
        body='<main id="login-root"></main>',
    )


@router.get("/admin", response_class=HTMLResponse)
def dashboard_page(request: Request) -> str:
    claims = getattr(request.state, "session", None) or {}
    who = html.escape(str(claims.get("sub", "")))
    return _PAGE.format(
        title="Admin dashboard",
        page="admin-dashboard",
        body=f'<main id="dashboard-root" data-user="{who}"></main>',
    )
