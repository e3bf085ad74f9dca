"""
Auth gate in front of the WebDAV engine

Every request under the WebDAV mount point is authenticated, checked
against the permission model and path-checked against the storage root
before the engine sees it. Denials are answered here and never reach the
filesystem layer.
"""

import logging
from dataclasses import dataclass
from http import HTTPStatus
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
from urllib.parse import unquote, urlsplit

from .auth import (
    AuthenticationError,
    AuthorizationError,
    authenticate_header,
    get_username_from_header,
)
from .fs import MalformedPathError, PathSafetyError, decode_wsgi_path, safe_join
from .models import Config, Decision, User
from .permissions import (
    DESTINATION_CAPABILITIES,
    SUPPORTED_METHODS,
    UnsupportedMethodError,
    descends_into_collection,
    evaluate,
    required_capabilities,
)

logger = logging.getLogger(__name__)

MOUNT_PATH = "/webdav"
REALM = "webdav"
USER_ENVIRON_KEY = "webdisk.user"

GATE_ERRORS = (
    AuthenticationError,
    AuthorizationError,
    PathSafetyError,
    UnsupportedMethodError,
)

StartResponse = Callable[..., Any]
WsgiApp = Callable[[Dict[str, Any], StartResponse], Iterable[bytes]]


@dataclass(frozen=True)
class DavRequest:
    """The parts of a WebDAV request the gate looks at"""
    method: str
    path: str
    authorization: Optional[str] = None
    depth: Optional[str] = None
    destination: Optional[str] = None
    mount_path: str = MOUNT_PATH

    @classmethod
    def from_environ(cls, environ: Dict[str, Any], mount_path: str = MOUNT_PATH) -> "DavRequest":
        """Build from a WSGI environ whose PATH_INFO is relative to the mount"""
        return cls(
            method=environ.get("REQUEST_METHOD", "GET").upper(),
            path=environ.get("PATH_INFO", "") or "/",
            authorization=environ.get("HTTP_AUTHORIZATION"),
            depth=environ.get("HTTP_DEPTH"),
            destination=environ.get("HTTP_DESTINATION"),
            mount_path=mount_path,
        )


class AuthGate:
    """Authorizes WebDAV requests against one configuration snapshot"""

    def __init__(self, config: Config):
        self.config = config
        self.root = config.storage_root

    def authorize(self, request: DavRequest) -> Decision:
        """
        Decide whether a request may proceed to the WebDAV engine

        Returns:
            Decision.allow(user) or Decision.deny(status, reason)
        """
        if not self.config.webdav.enabled:
            return Decision.deny(404, "WebDAV service is disabled")

        try:
            user = self._check(request)
        except GATE_ERRORS as e:
            return Decision.deny(e.status_code, str(e))

        return Decision.allow(user)

    def _check(self, request: DavRequest) -> User:
        user = authenticate_header(self.config.webdav.users, request.authorization)

        needed = required_capabilities(request.method)
        missing = needed - user.permissions
        if missing:
            raise AuthorizationError(
                f"{request.method} requires {_capability_names(missing)} permission"
            )

        rel_path = decode_wsgi_path(request.path)
        target = self.resolve(rel_path)
        descends = descends_into_collection(rel_path)

        if request.method in DESTINATION_CAPABILITIES:
            dest_path = self._destination_path(request)
            self.resolve(dest_path)
            descends = descends or descends_into_collection(dest_path)

        allowed, reason = evaluate(
            user, request.method, target.is_dir(), request.depth, descends=descends
        )
        if not allowed:
            raise AuthorizationError(reason)

        return user

    def resolve(self, rel_path: str) -> Path:
        """Map a decoded request path onto the storage root"""
        return safe_join(self.root, rel_path)

    def _destination_path(self, request: DavRequest) -> str:
        if not request.destination:
            raise MalformedPathError(f"{request.method} requires a Destination header")

        try:
            dest_path = unquote(urlsplit(request.destination).path, errors="strict")
        except (UnicodeDecodeError, ValueError):
            raise MalformedPathError(f"Destination is not valid UTF-8: {request.destination!r}")
        mount = request.mount_path.rstrip("/")
        if dest_path != mount and not dest_path.startswith(mount + "/"):
            raise MalformedPathError(
                f"Destination is outside {request.mount_path}: {request.destination}"
            )
        return dest_path[len(mount):] or "/"


def _capability_names(capabilities) -> str:
    return ", ".join(sorted(cap.name.lower() for cap in capabilities))


class WebDavGate:
    """WSGI wrapper that enforces AuthGate before delegating to the engine"""

    def __init__(self, config: Config, engine: Optional[WsgiApp] = None, mount_path: str = MOUNT_PATH):
        self.gate = AuthGate(config)
        self.engine = engine
        self.mount_path = mount_path

    def __call__(self, environ: Dict[str, Any], start_response: StartResponse) -> Iterable[bytes]:
        request = DavRequest.from_environ(environ, self.mount_path)
        decision = self.gate.authorize(request)

        if not decision.allowed or self.engine is None:
            logger.warning(
                f"WebDAV request denied: {request.method} {request.path} "
                f"user={_username_for_log(request)} status={decision.status} - {decision.reason}"
            )
            return self._deny(decision, start_response)

        environ[USER_ENVIRON_KEY] = decision.user
        return self.engine(environ, start_response)

    def _deny(self, decision: Decision, start_response: StartResponse) -> List[bytes]:
        status = decision.status if not decision.allowed else 404
        body = f"{status} {HTTPStatus(status).phrase}: {decision.reason}\n".encode("utf-8")

        headers: List[Tuple[str, str]] = [
            ("Content-Type", "text/plain; charset=utf-8"),
            ("Content-Length", str(len(body))),
        ]
        if status == 401:
            headers.append(("WWW-Authenticate", f'Basic realm="{REALM}"'))
        elif status == 405:
            headers.append(("Allow", ", ".join(SUPPORTED_METHODS)))

        start_response(f"{status} {HTTPStatus(status).phrase}", headers)
        return [body]


def _username_for_log(request: DavRequest) -> str:
    return get_username_from_header(request.authorization) or "-"
