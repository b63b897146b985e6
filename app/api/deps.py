"""FastAPI dependencies for database sessions and operator identity."""

from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from app.core.database import get_session, get_session_factory
from app.core.security import decode_jwt
from app.services.provisioners import Provisioners, default_provisioners

bearer_scheme = HTTPBearer()


class OperatorContext:
    """Resolved operator identity carried through a request."""

    __slots__ = ("subject",)

    def __init__(self, subject: str) -> None:
        self.subject = subject


async def get_operator(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(bearer_scheme)],
) -> OperatorContext:
    """Resolve a bearer JWT issued to a platform operator."""
    try:
        payload = decode_jwt(credentials.credentials)
    except JWTError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired JWT",
        ) from exc

    subject = payload.get("sub")
    if not subject or payload.get("scope") != "operator":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Malformed JWT payload",
        )
    return OperatorContext(subject=subject)


def get_provisioners() -> Provisioners:
    return default_provisioners()


# Typed shorthand for use in route signatures
Operator = Annotated[OperatorContext, Depends(get_operator)]
Session = Annotated[AsyncSession, Depends(get_session)]
SessionFactory = Annotated[sessionmaker, Depends(get_session_factory)]
ProvisionerSet = Annotated[Provisioners, Depends(get_provisioners)]
