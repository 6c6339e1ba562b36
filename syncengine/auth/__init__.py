"""JWT authentication module."""

from syncengine.auth.dependencies import get_current_account_id
from syncengine.auth.jwt import (
    create_access_token,
    create_oauth_state,
    decode_access_token,
    decode_oauth_state,
)

__all__ = [
    "create_access_token",
    "create_oauth_state",
    "decode_access_token",
    "decode_oauth_state",
    "get_current_account_id",
]
