"""Authentication dependencies — get_current_principal, require_role."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Callable

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from trayflow.auth.jwt import AuthError, decode_token
from trayflow.models.enums import UserRoleEnum

bearer_scheme = HTTPBearer(auto_error=False)

READ_ROLES = (UserRoleEnum.admin, UserRoleEnum.grower, UserRoleEnum.viewer)
WRITE_ROLES = (UserRoleEnum.admin, UserRoleEnum.grower)


@dataclass(slots=True)
class AuthPrincipal:
	subject_id: uuid.UUID
	role: UserRoleEnum


def _raise_auth(exc: AuthError) -> HTTPException:
	return HTTPException(
		status_code=exc.status_code,
		detail={"error": exc.code, "message": exc.detail},
	)


def _principal_from_token(credentials: HTTPAuthorizationCredentials | None) -> AuthPrincipal:
	if credentials is None or credentials.scheme.lower() != "bearer":
		raise AuthError(code="auth_required", detail="Bearer token is required")

	payload = decode_token(credentials.credentials)
	try:
		subject_id = uuid.UUID(str(payload["sub"]))
	except (ValueError, KeyError) as exc:
		raise AuthError(code="token_invalid", detail="Token subject is invalid") from exc

	try:
		role = UserRoleEnum(str(payload.get("role", "")))
	except ValueError as exc:
		raise AuthError(code="role_invalid", detail="Token role is not recognised") from exc

	return AuthPrincipal(subject_id=subject_id, role=role)


async def get_current_principal(request: Request) -> AuthPrincipal:
	credentials = await bearer_scheme(request)
	try:
		return _principal_from_token(credentials)
	except AuthError as exc:
		raise _raise_auth(exc) from exc


def require_role(*allowed: UserRoleEnum) -> Callable[..., AuthPrincipal]:
	allowed_set = set(allowed)

	async def dependency(principal: AuthPrincipal = Depends(get_current_principal)) -> AuthPrincipal:
		if principal.role not in allowed_set:
			raise HTTPException(
				status_code=status.HTTP_403_FORBIDDEN,
				detail={"error": "forbidden", "message": "Insufficient role"},
			)
		return principal

	return dependency
