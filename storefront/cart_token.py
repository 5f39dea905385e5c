"""
Cart token resolution from the request cookie.
"""
import uuid
from typing import Optional

from starlette.requests import cookie_parser

from storefront.config import Config


def is_valid_token(token: Optional[str]) -> bool:
    """True when the token is a canonical version 4 UUID"""
    if not token:
        return False
    try:
        parsed = uuid.UUID(token)
    except (ValueError, AttributeError, TypeError):
        return False
    return parsed.version == 4 and str(parsed) == token.lower()


def resolve_token(cookie_header: Optional[str], cookie_name: Optional[str] = None) -> Optional[str]:
    """
    Read the cart token from a raw Cookie header.

    Returns None when the header or cookie is absent, or when the value is
    not a well formed version 4 UUID. No side effects.
    """
    if not cookie_header:
        return None

    token = cookie_parser(cookie_header).get(cookie_name or Config.CART_COOKIE_NAME)
    if token is None:
        return None

    token = token.strip()
    return token if is_valid_token(token) else None


def mint_token() -> str:
    """Generate a fresh cart token"""
    return str(uuid.uuid4())
