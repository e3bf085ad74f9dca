"""
Authentication for webdisk
"""

import base64
import binascii
import hmac
import logging
from typing import Mapping, Optional, Tuple

from passlib.context import CryptContext

from .models import User

logger = logging.getLogger(__name__)

# Stored passwords are plaintext by default; bcrypt hashes are also accepted
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


class AuthenticationError(Exception):
    """Missing or invalid credentials"""
    status_code = 401


class AuthorizationError(Exception):
    """Valid identity without the required capability"""
    status_code = 403


def is_password_hash(stored: str) -> bool:
    """Check whether a stored password is a hash known to pwd_context"""
    try:
        return pwd_context.identify(stored) is not None
    except ValueError:
        return False


def verify_password(plain_password: str, stored_password: str) -> bool:
    """
    Compare a presented password with the stored one

    Every credential check goes through here. Plaintext values are compared
    in constant time; bcrypt hashes are verified by passlib.
    """
    if is_password_hash(stored_password):
        try:
            return pwd_context.verify(plain_password, stored_password)
        except ValueError:
            return False

    return hmac.compare_digest(
        plain_password.encode("utf-8"), stored_password.encode("utf-8")
    )


def parse_basic_auth(authorization: str) -> Optional[Tuple[str, str]]:
    """Parse Basic Auth header"""
    if not authorization:
        return None

    scheme, _, encoded = authorization.strip().partition(" ")
    if scheme.lower() != "basic" or not encoded:
        return None

    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode('utf-8')
    except (binascii.Error, ValueError) as e:
        logger.warning(f"Failed to parse Basic Auth header: {e}")
        return None

    if ':' not in decoded:
        return None

    username, password = decoded.split(':', 1)
    return username, password


def authenticate_user(users: Mapping[str, User], username: str, password: str) -> User:
    """
    Authenticate user by username and password

    Raises:
        AuthenticationError: If the user is unknown or the password is wrong
    """
    user = users.get(username)
    if user is None:
        # Spend a comparison anyway so unknown names are not faster to reject
        verify_password(password, password)
        logger.warning(f"Authentication failed: user not found: {username}")
        raise AuthenticationError("Invalid username or password")

    if not verify_password(password, user.password):
        logger.warning(f"Authentication failed: invalid password for user: {username}")
        raise AuthenticationError("Invalid username or password")

    logger.debug(f"User authenticated successfully: {username}")
    return user


def authenticate_header(users: Mapping[str, User], authorization: Optional[str]) -> User:
    """
    Authenticate the value of an Authorization header

    Raises:
        AuthenticationError: If the header is absent, malformed or invalid
    """
    if not authorization:
        raise AuthenticationError("Authentication required")

    credentials = parse_basic_auth(authorization)
    if not credentials:
        raise AuthenticationError("Malformed Basic authorization header")

    username, password = credentials
    return authenticate_user(users, username, password)


def create_basic_auth_header(username: str, password: str) -> str:
    """Create Basic Auth header value"""
    credentials = f"{username}:{password}"
    encoded = base64.b64encode(credentials.encode('utf-8')).decode('ascii')
    return f"Basic {encoded}"


def get_username_from_header(authorization: Optional[str]) -> Optional[str]:
    """Extract username from a header without authenticating it"""
    if not authorization:
        return None

    credentials = parse_basic_auth(authorization)
    if not credentials:
        return None

    return credentials[0]
