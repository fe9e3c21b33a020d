from fastapi import Depends, HTTPException, status, Request, WebSocket
from fastapi.security import OAuth2PasswordBearer, APIKeyHeader
from .jwt_handler import customer_id_from_token
from .api_key import verify_api_key

# Defines the expected header format (Bearer <token>)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/login", auto_error=False)

# Defines the expected internal service header
api_key_header = APIKeyHeader(name="X-Internal-API-Key", auto_error=False)

async def get_optional_customer(request: Request, token: str = Depends(oauth2_scheme)) -> int | None:
    """Customer id (sub) from the bearer token. Anonymous callers get None instead of a 401."""
    if not token:
        return None
    customer_id = customer_id_from_token(token)
    if customer_id is not None:
        request.state.user_id = customer_id
    return customer_id

async def verify_internal_api_key(api_key: str = Depends(api_key_header)) -> bool:
    """Dependency to validate service-to-service internal requests."""
    if not verify_api_key(api_key):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid or missing X-Internal-API-Key header"
        )
    return True

def websocket_has_internal_key(websocket: WebSocket) -> bool:
    """Printer agents authenticate their socket with the same internal key."""
    provided = websocket.headers.get("X-Internal-API-Key") or websocket.query_params.get("key", "")
    return verify_api_key(provided)
