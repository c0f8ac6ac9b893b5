from .decorators import current_owner_id, require_auth
from .tokens import create_access_token, verify_access_token

__all__ = ["create_access_token", "current_owner_id", "require_auth", "verify_access_token"]
