from __future__ import annotations

import uuid

import structlog
from fastapi import FastAPI, Request
from starlette.responses import Response

ROBOTS_HEADER = 'noindex, nofollow, noarchive'
REQUEST_ID_HEADER = 'X-Request-ID'


def install_security_headers(app: FastAPI) -> None:
    @app.middleware('http')
    async def add_security_headers(request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        structlog.contextvars.bind_contextvars(request_id=request_id)
        try:
            response: Response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars('request_id')
        response.headers['X-Robots-Tag'] = ROBOTS_HEADER
        response.headers.setdefault('X-Content-Type-Options', 'nosniff')
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
