from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException


@dataclass(frozen=True)
class Actor:
    user_id: str
    is_privileged: bool = False


# Used by the payment consumer, which acts on behalf of the platform.
SYSTEM_ACTOR = Actor(user_id="system", is_privileged=True)


async def get_actor(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> Actor:
    """Identity as forwarded by the authenticating gateway."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Authorization denied, no user provided")
    return Actor(user_id=x_user_id, is_privileged=(x_user_role or "").lower() == "admin")


async def require_admin(actor: Actor = Depends(get_actor)) -> Actor:
    if not actor.is_privileged:
        raise HTTPException(status_code=403, detail="Access denied. Admin privileges required.")
    return actor
