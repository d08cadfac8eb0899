from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from examforge.config import Settings

security_scheme = HTTPBearer()


@dataclass(frozen=True)
class AuthContext:
  """Caller credentials carried through to continuation batches.

  Token verification belongs to the identity provider; this service only relays it.
  """

  token: str


async def get_auth_context(credentials: Annotated[HTTPAuthorizationCredentials, Depends(security_scheme)]) -> AuthContext:
  """Resolve the caller's bearer token into an auth context."""
  token = (credentials.credentials or "").strip()
  if not token:
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid authentication credentials", headers={"WWW-Authenticate": "Bearer"})
  return AuthContext(token=token)


def verify_task_secret(settings: Settings, *, authorization: str | None, task_secret_header: str | None) -> None:
  """Reject internal task calls that do not carry the shared task secret."""
  # Internal endpoints are deny-by-default when no secret is configured.
  if not settings.task_secret:
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Task authentication is not configured.")
  expected_auth = f"Bearer {settings.task_secret}"
  # Cloud Tasks OIDC occupies Authorization, so the dedicated header is checked first.
  shared_secret_valid = secrets.compare_digest((task_secret_header or ""), settings.task_secret)
  bearer_valid = secrets.compare_digest((authorization or ""), expected_auth)
  if not shared_secret_valid and not bearer_valid:
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid task secret.")
