from __future__ import annotations

import secrets

from fastapi import Request, status
from fastapi.responses import JSONResponse

from bypass_router.settings import Settings

BYPASS_PATH = "/bypass"
ADMIN_PREFIX = "/admin"
SCRIPT_MODERATION_PREFIXES = ("/alterar_status/", "/remover_script/")
APK_EDIT_PATH = "/edit/apk-up"
REQUIRED_URL_SCHEME = "https://"


def _matches(candidate: str | None, expected: str) -> bool:
    if not candidate or not expected:
        return False
    return secrets.compare_digest(candidate.encode("utf-8"), expected.encode("utf-8"))


class SharedSecretGuard:
    """Static shared-secret checks on query parameters, per route family."""

    def __init__(self, settings: Settings):
        self.bypass_key = settings.bypass_api_key
        self.admin_key = settings.admin_api_key
        self.apk_session_key = settings.apk_session_key

    def check_request(self, request: Request) -> JSONResponse | None:
        path = request.url.path
        params = request.query_params

        if path == BYPASS_PATH:
            if not _matches(params.get("key"), self.bypass_key):
                return error_response(
                    status.HTTP_401_UNAUTHORIZED,
                    "authentication_error",
                    "Invalid API key.",
                )
            url = params.get("url")
            if not url:
                return error_response(
                    status.HTTP_400_BAD_REQUEST,
                    "invalid_request_error",
                    "Missing 'url' query parameter.",
                )
            if not url.startswith(REQUIRED_URL_SCHEME):
                return error_response(
                    status.HTTP_400_BAD_REQUEST,
                    "invalid_request_error",
                    f"Invalid URL: must start with '{REQUIRED_URL_SCHEME}'.",
                )
            return None

        if (
            path == ADMIN_PREFIX
            or path.startswith(f"{ADMIN_PREFIX}/")
            or path.startswith(SCRIPT_MODERATION_PREFIXES)
        ):
            if not _matches(params.get("admin_key"), self.admin_key):
                return error_response(
                    status.HTTP_401_UNAUTHORIZED,
                    "authentication_error",
                    "Invalid admin key.",
                )
            return None

        if path == APK_EDIT_PATH:
            if not _matches(params.get("session"), self.apk_session_key):
                return error_response(
                    status.HTTP_403_FORBIDDEN,
                    "permission_error",
                    "Invalid session.",
                )
        return None


def error_response(status_code: int, error_type: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"type": error_type, "message": message}},
    )
