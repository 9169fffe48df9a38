"""Authentication helpers for FastAPI endpoints.

Bearer JWTs (HS256, see ``app.infra.jwt``) are required outside development.
In development the X-User-* headers are accepted so local tools and tests can
act as any user.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt import InvalidTokenError

from app.infra import jwt as jwt_helper
from app.settings import settings


@dataclass(slots=True)
class AuthenticatedUser:
	id: str
	roles: Tuple[str, ...] = ()
	permissions: Tuple[str, ...] = ()
	session_id: Optional[str] = None

	def has_role(self, role: str) -> bool:
		return role in self.roles


_bearer_scheme = HTTPBearer(auto_error=False)


def _split_claim(value: object) -> Tuple[str, ...]:
	if isinstance(value, (list, tuple)):
		return tuple(str(item).strip() for item in value if str(item).strip())
	if isinstance(value, str):
		return tuple(part.strip() for part in value.split(",") if part.strip())
	return ()


def verify_access_jwt(token: str) -> AuthenticatedUser:
	"""Decode and validate an access JWT and return an AuthenticatedUser.

	- issuer="moderation-api", audience="moderation-fe"
	- required claims: sub, exp, iat
	- roles/permissions can be list[str] or comma-separated string.
	"""
	try:
		payload = jwt_helper.decode_access(token)
	except InvalidTokenError:
		raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_token") from None

	sub = str(payload.get("sub") or "").strip()
	if not sub:
		raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_token")

	session_id = payload.get("sid")
	return AuthenticatedUser(
		id=sub,
		roles=_split_claim(payload.get("roles") or payload.get("role")),
		permissions=_split_claim(payload.get("permissions") or payload.get("scp")),
		session_id=str(session_id).strip() if session_id is not None else None,
	)


async def get_current_user(
	x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
	x_user_roles: Optional[str] = Header(default=None, alias="X-User-Roles"),
	x_user_permissions: Optional[str] = Header(default=None, alias="X-User-Permissions"),
	credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> AuthenticatedUser:
	"""Resolve the authenticated user.

	In development we allow simple headers. In all other environments, headers are
	ignored and a valid Bearer JWT is required.
	"""
	if credentials and credentials.scheme.lower() == "bearer":
		return verify_access_jwt(credentials.credentials)

	if settings.is_dev() and x_user_id:
		return AuthenticatedUser(
			id=x_user_id.strip(),
			roles=_split_claim(x_user_roles),
			permissions=_split_claim(x_user_permissions),
		)

	raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_token")
