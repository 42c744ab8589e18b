import logging
from collections.abc import Awaitable, Callable

from fastapi import Request, Response, status

from portal.context import report_server_error
from portal.utils.templates import render_page

logger = logging.getLogger("portal.access")

CallNext = Callable[[Request], Awaitable[Response]]

SECURITY_HEADERS = {
    "Referrer-Policy": "origin-when-cross-origin",
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "deny",
}


def apply_security_headers(response: Response) -> Response:
    for header, value in SECURITY_HEADERS.items():
        response.headers[header] = value
    return response


def server_error(request: Request, exc: BaseException) -> Response:
    report_server_error(exc, request=request)
    # Don't expose internal error details
    response = render_page(
        request,
        "error.html",
        {"title": "Server error", "message": "An unexpected error occurred. Please try again later."},
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    # The exception skipped the security_headers layer
    return apply_security_headers(response)


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "-"


async def log_access(request: Request, call_next: CallNext) -> Response:
    response = await call_next(request)
    logger.info(
        "access ip=%s method=%s url=%s proto=HTTP/%s status=%d size=%s",
        client_ip(request),
        request.method,
        request.url,
        request.scope.get("http_version", "1.1"),
        response.status_code,
        response.headers.get("content-length", "-"),
    )
    return response


async def recover_panic(request: Request, call_next: CallNext) -> Response:
    try:
        return await call_next(request)
    except Exception as exc:
        return server_error(request, exc)


async def security_headers(request: Request, call_next: CallNext) -> Response:
    return apply_security_headers(await call_next(request))
