"""
Security and Authentication for the AuditChain API.

Bearer JWT validation with role-based scopes. Tokens are issued by the
platform's identity service and signed with the shared SECRET_KEY.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, List

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer, SecurityScopes
from jose import JWTError, jwt
from pydantic import BaseModel

from auditchain.app.core.config import get_settings
from auditchain.app.core.logging import actor_id_ctx

settings = get_settings()

# Ledger scopes
AUDIT_WRITE = "audit:write"
AUDIT_READ = "audit:read"
AUDIT_VERIFY = "audit:verify"

# Tokens are issued by the identity service; this API only validates them
bearer_scheme = HTTPBearer(auto_error=False)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    """
    Generate a signed JWT token.
    """
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=15)

    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)
    return encoded_jwt


# Role definitions
class Role:
    ADMIN = "admin"
    COMPLIANCE_OFFICER = "compliance_officer"  # Reads + verification
    SERVICE = "service"                        # Platform services that record events
    VIEWER = "viewer"


ROLE_SCOPES = {
    Role.ADMIN: [AUDIT_WRITE, AUDIT_READ, AUDIT_VERIFY],
    Role.COMPLIANCE_OFFICER: [AUDIT_READ, AUDIT_VERIFY],
    Role.SERVICE: [AUDIT_WRITE],
    Role.VIEWER: [AUDIT_READ],
}


class User(BaseModel):
    username: str
    role: str
    scopes: List[str] = []


class TokenData(BaseModel):
    username: Optional[str] = None
    role: Optional[str] = None
    scopes: List[str] = []


async def get_current_user(
    security_scopes: SecurityScopes,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)
) -> User:
    """
    Validate JWT token and check required scopes based on Role-Based Access Control.
    """
    if security_scopes.scopes:
        authenticate_value = f'Bearer scope="{security_scopes.scope_str}"'
    else:
        authenticate_value = "Bearer"

    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": authenticate_value},
    )

    if credentials is None:
        raise credentials_exception

    try:
        payload = jwt.decode(
            credentials.credentials,
            settings.secret_key,
            algorithms=[settings.algorithm]
        )
    except JWTError:
        raise credentials_exception

    username: Optional[str] = payload.get("sub")
    if username is None:
        raise credentials_exception

    role: str = payload.get("role", Role.VIEWER)
    # Assign scopes based on role if not present in token
    token_scopes = payload.get("scopes", ROLE_SCOPES.get(role, []))
    token_data = TokenData(username=username, role=role, scopes=token_scopes)

    for scope in security_scopes.scopes:
        if scope not in token_data.scopes:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Not enough permissions. Required scope: {scope}",
                headers={"WWW-Authenticate": authenticate_value},
            )

    actor_id_ctx.set(username)
    return User(username=username, role=role, scopes=token_data.scopes)


def token_subject(authorization: Optional[str]) -> Optional[str]:
    """Subject of a valid bearer token in an Authorization header, else None."""
    if not authorization or not authorization.lower().startswith("bearer "):
        return None
    try:
        payload = jwt.decode(
            authorization[7:].strip(),
            settings.secret_key,
            algorithms=[settings.algorithm]
        )
    except JWTError:
        return None
    return payload.get("sub")
