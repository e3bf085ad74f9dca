"""
WebDAV support for webdisk using WsgiDAV
"""

import logging
import os
from typing import Any, Dict

from wsgidav.dc.base_dc import BaseDomainController
from wsgidav.fs_dav_provider import FilesystemProvider
from wsgidav.wsgidav_app import WsgiDAVApp

from .gate import MOUNT_PATH, REALM, USER_ENVIRON_KEY, WebDavGate
from .models import Config

logger = logging.getLogger(__name__)


class WebDiskDomainController(BaseDomainController):
    """
    Domain controller for the WebDAV engine

    Credentials are checked by WebDavGate before WsgiDAV sees the request;
    this controller only confirms that the Basic credentials WsgiDAV parsed
    belong to the user the gate admitted.
    """

    def get_domain_realm(self, path_info: str, environ: Dict[str, Any]) -> str:
        """Return the realm for a given path"""
        return REALM

    def require_authentication(self, realm: str, environ: Dict[str, Any]) -> bool:
        """Return True if authentication is required for this request"""
        return True

    def basic_auth_user(self, realm: str, user_name: str, password: str, environ: Dict[str, Any]) -> bool:
        """Accept only the user already admitted by the gate"""
        user = environ.get(USER_ENVIRON_KEY)
        if user is None or user.name != user_name:
            logger.warning(f"WebDAV engine rejected user not admitted by gate: {user_name}")
            return False
        return True

    def supports_http_digest_auth(self) -> bool:
        """We don't support digest auth"""
        return False

    def digest_auth_user(self, realm: str, user_name: str, environ: Dict[str, Any]) -> bool:
        return False


def build_webdav_config(config: Config) -> Dict[str, Any]:
    """Build the WsgiDAV configuration for the storage root"""
    return {
        "mount_path": MOUNT_PATH,
        "provider_mapping": {
            "/": FilesystemProvider(
                str(config.storage_root),
                readonly=False,
                # Symlinks may not resolve outside the root, matching safe_join
                fs_opts={"follow_symlinks": False},
            ),
        },
        "http_authenticator": {
            "domain_controller": WebDiskDomainController,
            "trusted_auth_header": None,
            "accept_basic": True,
            "accept_digest": False,
            "default_to_digest": False,
        },
        "verbose": 1 if os.getenv("WEBDISK_DEBUG") else 0,
        "logging": {
            "enable": False,
            "enable_loggers": [],
        },
        "property_manager": True,
        "lock_storage": True,
        "dir_browser": {
            "enable": True,
            "response_trailer": "webdisk",
        },
        "middleware_stack": [
            "wsgidav.error_printer.ErrorPrinter",
            "wsgidav.http_authenticator.HTTPAuthenticator",
            "wsgidav.dir_browser.WsgiDavDirBrowser",
            "wsgidav.request_resolver.RequestResolver",
        ],
    }


def create_webdav_app(config: Config) -> WebDavGate:
    """
    Create the gated WebDAV WSGI application

    When WebDAV is disabled the gate is still returned, without an engine,
    so every request under the mount point answers 404.
    """
    if not config.webdav.enabled:
        logger.info("WebDAV disabled")
        return WebDavGate(config)

    engine = WsgiDAVApp(build_webdav_config(config))

    logger.info(
        f"WebDAV enabled at {MOUNT_PATH} for {config.storage_root} "
        f"({len(config.webdav.users)} users)"
    )
    return WebDavGate(config, engine)
