from typing import Optional

from fastapi import Request, Security
from fastapi.security.api_key import APIKeyHeader

from .errors import ForbiddenError

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def caller_identity(request: Request, api_key: Optional[str] = Security(api_key_header)) -> Optional[str]:
    """Owner id for the presented API key, or None for anonymous callers."""
    if api_key is None:
        return None
    owners = request.app.state.services.settings.api_key_owners()
    owner = owners.get(api_key)
    if owner is None:
        raise ForbiddenError("Invalid API key")
    return owner


def rate_limit_identifier(request: Request, caller_id: Optional[str]) -> str:
    if caller_id:
        return f"user:{caller_id}"
    host = request.client.host if request.client else "unknown"
    return f"ip:{host}"
