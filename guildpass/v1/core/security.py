import hmac
from dataclasses import dataclass

from fastapi import Depends, Header

from guildpass.config.settings import AuthMode, Settings, get_settings
from guildpass.v1.core.exceptions import BadRequestError, UnauthorizedError


def tokens_match(presented: str | None, expected: str) -> bool:
    """Constant-time comparison of a presented secret against the configured one."""
    if not presented or not expected:
        return False
    return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))


def extract_bearer_token(authorization: str | None) -> str | None:
    """Return the token part of an ``Authorization: Bearer <token>`` header."""
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


@dataclass
class Principal:
    """Represents the operator (human or automation) calling admin endpoints."""

    operator_id: str
    roles: list[str]


@dataclass
class WorkerIdentity:
    """A queue worker authenticated with the shared worker token."""

    authenticated: bool


async def get_principal(
    authorization: str | None = Header(None, alias="Authorization"),
    x_operator_id: str | None = Header(None, alias="X-Operator-ID"),
    settings: Settings = Depends(get_settings),
) -> Principal:
    """
    Dependency injection function to get the current operator principal.

    Behavior based on AUTH_MODE:
    - none: Returns dev defaults with admin role
    - dev: Requires an X-Operator-ID header
    - token: Requires ``Authorization: Bearer <OPERATOR_TOKEN>``
    """
    if settings.auth_mode == AuthMode.NONE:
        return Principal(operator_id=settings.dev_operator_id, roles=["admin"])
    elif settings.auth_mode == AuthMode.DEV:
        if not x_operator_id:
            raise BadRequestError("X-Operator-ID header is required in dev auth mode")
        return Principal(operator_id=x_operator_id, roles=["admin"])
    elif settings.auth_mode == AuthMode.TOKEN:
        token = extract_bearer_token(authorization)
        if not tokens_match(token, settings.operator_token):
            raise UnauthorizedError("Invalid operator token")
        return Principal(operator_id=x_operator_id or "operator", roles=["admin"])
    else:
        raise ValueError(f"Unknown auth mode: {settings.auth_mode}")


async def require_worker(
    authorization: str | None = Header(None, alias="Authorization"),
    settings: Settings = Depends(get_settings),
) -> WorkerIdentity:
    """Authenticate a queue worker by its bearer token.

    With no WORKER_API_TOKEN configured (development only, enforced by
    settings validation) every caller is accepted.
    """
    if not settings.worker_api_token:
        return WorkerIdentity(authenticated=False)

    token = extract_bearer_token(authorization)
    if not tokens_match(token, settings.worker_api_token):
        raise UnauthorizedError("Invalid worker token")
    return WorkerIdentity(authenticated=True)


# Convenience type aliases for dependency injection
PrincipalDep = Depends(get_principal)
WorkerDep = Depends(require_worker)
