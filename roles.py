"""
Role hierarchy shared by page guards and data-mutation endpoints.

user < curator < admin < super_admin. Anything else ranks 0 and is denied.
"""
from enum import Enum
from typing import Optional, Union

from errors import AuthorizationError


class Role(str, Enum):
    user = "user"
    curator = "curator"
    admin = "admin"
    super_admin = "super_admin"


ROLE_RANKS = {
    Role.user: 1,
    Role.curator: 2,
    Role.admin: 3,
    Role.super_admin: 4,
}

RoleLike = Union[Role, str, None]


def parse_role(value: RoleLike) -> Optional[Role]:
    if isinstance(value, Role):
        return value
    if not isinstance(value, str):
        return None
    try:
        return Role(value)
    except ValueError:
        return None


def rank(value: RoleLike) -> int:
    role = parse_role(value)
    return ROLE_RANKS[role] if role is not None else 0


def has_access(caller_role: RoleLike, required_role: RoleLike) -> bool:
    required = rank(required_role)
    # an unrecognized requirement denies everyone instead of admitting everyone
    if required == 0:
        return False
    return rank(caller_role) >= required


def require(caller_role: RoleLike, required_role: RoleLike, action: str = "this action"):
    if not has_access(caller_role, required_role):
        required = parse_role(required_role)
        label = required.value if required is not None else str(required_role)
        raise AuthorizationError(f"{label} access required for {action}")
