"""
Middleware for webdisk
"""

import logging
import time
from typing import Callable, Optional

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .auth import get_username_from_header

logger = logging.getLogger(__name__)


def get_client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


class AccessLogMiddleware(BaseHTTPMiddleware):
    """Access logging middleware"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        client_ip = get_client_ip(request)
        user = get_username_from_header(request.headers.get("authorization"))

        try:
            response = await call_next(request)
        except Exception as e:
            duration = time.time() - start_time
            self._log_access(request, None, duration, client_ip, user, error=str(e))
            raise

        duration = time.time() - start_time
        self._log_access(request, response, duration, client_ip, user)
        return response

    def _log_access(
        self,
        request: Request,
        response: Optional[Response],
        duration: float,
        client_ip: str,
        user: Optional[str],
        error: Optional[str] = None
    ):
        """Log access information"""

        status_code = response.status_code if response else 500
        content_length = response.headers.get("content-length", "-") if response else "-"

        log_data = {
            "method": request.method,
            "path": str(request.url.path),
            "status": status_code,
            "size": content_length,
            "duration": round(duration * 1000, 2),  # milliseconds
            "ip": client_ip,
            "user": user or "-",
            "user_agent": request.headers.get("user-agent", "-"),
        }

        if error:
            log_data["error"] = error

        if status_code >= 500:
            logger.error(f"ACCESS {log_data}")
        elif status_code >= 400:
            logger.warning(f"ACCESS {log_data}")
        else:
            logger.info(f"ACCESS {log_data}")


class ExceptionHandlerMiddleware(BaseHTTPMiddleware):
    """Global exception handler middleware"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)

        except HTTPException:
            # Let FastAPI handle HTTP exceptions
            raise

        except Exception as e:
            logger.exception(f"Unhandled exception: {e}")
            return JSONResponse(
                status_code=500,
                content={"ok": False, "error": "Internal server error"},
            )


def setup_middleware(app: FastAPI):
    """Setup all middleware"""
    # Added last runs first: access logging sees the 500 produced below it
    app.add_middleware(ExceptionHandlerMiddleware)
    app.add_middleware(AccessLogMiddleware)

    logger.debug("Middleware setup complete")
