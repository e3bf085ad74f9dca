"""
webdisk: small network file server with permission-aware WebDAV
Built with FastAPI + Uvicorn + WsgiDAV
"""

__version__ = "1.0.0"
__author__ = "webdisk"
__description__ = "File server with HTTP browsing and authenticated WebDAV"
