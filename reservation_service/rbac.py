import json

from fastapi import Header

from .errors import Forbidden
from .lifecycle import Actor, ActorRole


def _token_roles(raw: str | None) -> list[str]:
    if not raw:
        raise Forbidden("Roles missing in token")
    try:
        roles = json.loads(raw)
    except ValueError:
        roles = raw.split(",")
    if isinstance(roles, str):
        roles = [roles]
    if not isinstance(roles, list) or not roles:
        raise Forbidden("Roles missing in token")
    return [str(r).strip() for r in roles if str(r).strip()]


def resolve_actor(user_sub: str | None, user_roles: str | None, acting_role: str | None = None) -> Actor:
    """
    Map gateway identity headers to an Actor.

    A caller holding several roles picks one with X-Acting-Role; otherwise the
    first recognised role wins.
    """
    if not user_sub:
        raise Forbidden("Missing user identity")

    roles = []
    for token_role in _token_roles(user_roles):
        role = ActorRole.from_token_role(token_role)
        if role is not None and role not in roles:
            roles.append(role)
    if not roles:
        raise Forbidden("Access forbidden for this role")

    if acting_role:
        wanted = ActorRole.from_token_role(acting_role)
        if wanted is None or wanted not in roles:
            raise Forbidden(f"Cannot act as {acting_role!r}")
        return Actor(id=user_sub, role=wanted)

    return Actor(id=user_sub, role=roles[0])


async def get_actor(
    x_user_sub: str | None = Header(default=None),
    x_user_roles: str | None = Header(default=None),
    x_acting_role: str | None = Header(default=None),
) -> Actor:
    return resolve_actor(x_user_sub, x_user_roles, x_acting_role)


def require_role(actor: Actor, allowed: set[ActorRole]) -> None:
    if actor.role not in allowed:
        raise Forbidden("Access forbidden for this role")
