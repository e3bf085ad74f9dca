"""
Permission model: WebDAV/HTTP method to required capabilities
"""

import logging
from typing import Dict, FrozenSet, Optional, Tuple

from .models import Capability, User

logger = logging.getLogger(__name__)

READ = frozenset({Capability.READ})
WRITE = frozenset({Capability.WRITE})

# Capabilities on the request target (source for COPY/MOVE)
METHOD_CAPABILITIES: Dict[str, FrozenSet[Capability]] = {
    "GET": READ,
    "HEAD": READ,
    "OPTIONS": READ,
    "PROPFIND": READ,
    "PUT": WRITE,
    "MKCOL": WRITE,
    "DELETE": WRITE,
    "PROPPATCH": WRITE,
    "LOCK": WRITE,
    "UNLOCK": WRITE,
    "COPY": READ,
    "MOVE": READ,
}

# Capabilities on the Destination of COPY/MOVE
DESTINATION_CAPABILITIES: Dict[str, FrozenSet[Capability]] = {
    "COPY": WRITE,
    "MOVE": WRITE,
}

# Methods that enumerate a collection when aimed at a directory
LISTING_METHODS = frozenset({"GET", "HEAD", "PROPFIND"})

SUPPORTED_METHODS = tuple(METHOD_CAPABILITIES)


class UnsupportedMethodError(Exception):
    """Raised for methods the gate does not know how to authorize"""
    status_code = 405


def required_capabilities(method: str) -> FrozenSet[Capability]:
    """
    Return every capability a method needs, destination included

    Raises:
        UnsupportedMethodError: If the method is not a known WebDAV method
    """
    method = method.upper()
    if method not in METHOD_CAPABILITIES:
        raise UnsupportedMethodError(f"Method not allowed: {method}")
    return METHOD_CAPABILITIES[method] | DESTINATION_CAPABILITIES.get(method, frozenset())


def enumerates_collection(method: str, is_collection: bool, depth: Optional[str] = None) -> bool:
    """
    Check whether a request lists the members of a collection

    PROPFIND without a Depth header means infinity. GET/HEAD on a collection
    produce an HTML listing.
    """
    method = method.upper()
    if not is_collection or method not in LISTING_METHODS:
        return False
    if method == "PROPFIND":
        return (depth or "infinity").strip().lower() != "0"
    return True


def descends_into_collection(rel_path: str) -> bool:
    """
    Check whether a path reaches below a top-level entry of the root

    Opening anything inside a subdirectory passes through that directory,
    which takes execute just like listing it.
    """
    segments = [s for s in rel_path.replace("\\", "/").split("/") if s not in ("", ".")]
    return len(segments) > 1


def missing_capabilities(user: User, needed: FrozenSet[Capability]) -> FrozenSet[Capability]:
    return frozenset(needed - user.permissions)


def evaluate(
    user: User,
    method: str,
    is_collection: bool = False,
    depth: Optional[str] = None,
    descends: bool = False,
) -> Tuple[bool, str]:
    """
    Evaluate whether a user may perform a method

    Args:
        user: Authenticated user
        method: HTTP/WebDAV method
        is_collection: Whether the target is a directory
        depth: Value of the Depth header, if any
        descends: Whether the target lies inside a subdirectory

    Returns:
        (allowed, reason) tuple

    Raises:
        UnsupportedMethodError: If the method is not a known WebDAV method
    """
    needed = required_capabilities(method)
    if descends or enumerates_collection(method, is_collection, depth):
        needed = needed | {Capability.EXECUTE}

    missing = missing_capabilities(user, needed)
    if missing:
        names = ", ".join(cap.name.lower() for cap in Capability if cap in missing)
        return False, f"{method.upper()} requires {names} permission"

    return True, "Access granted"
