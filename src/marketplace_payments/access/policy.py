"""
Static role/resource/action grant table.

Grants are data, not code: `permission()` is a pure lookup into an
immutable mapping built once at import time. Provider grants extend the
customer grants; an admin holds `any` on every resource it is granted.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Dict, Iterable, Mapping, Optional, Tuple

from ..models.user import UserRole


class Resource(str, Enum):
    BOOKING = "booking"
    PROVIDER_BOOKING = "providerBooking"
    PAYMENT = "payment"
    WALLET = "wallet"
    CREDITS = "credits"
    SUBSCRIPTION = "subscription"


class Action(str, Enum):
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"


class Possession(str, Enum):
    OWN = "own"
    ANY = "any"


@dataclass(frozen=True)
class Principal:
    """The authenticated caller of an operation."""

    user_id: str
    role: UserRole

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


GrantKey = Tuple[UserRole, Resource, Action]


def _grants(role: UserRole, possession: Possession, pairs: Iterable[Tuple[Resource, Iterable[Action]]]) -> Dict[GrantKey, Possession]:
    return {
        (role, resource, action): possession
        for resource, actions in pairs
        for action in actions
    }


_CUSTOMER = _grants(
    UserRole.CUSTOMER,
    Possession.OWN,
    [
        (Resource.BOOKING, (Action.CREATE, Action.READ, Action.UPDATE, Action.DELETE)),
        (Resource.PAYMENT, (Action.CREATE, Action.READ)),
        (Resource.WALLET, (Action.READ, Action.UPDATE)),
        (Resource.CREDITS, (Action.READ,)),
        (Resource.SUBSCRIPTION, (Action.CREATE, Action.READ, Action.UPDATE)),
    ],
)

_PROVIDER = {
    **{(UserRole.PROVIDER, resource, action): p for (_, resource, action), p in _CUSTOMER.items()},
    **_grants(
        UserRole.PROVIDER,
        Possession.OWN,
        [(Resource.PROVIDER_BOOKING, (Action.READ, Action.UPDATE))],
    ),
}

_ADMIN = _grants(
    UserRole.ADMIN,
    Possession.ANY,
    [
        (Resource.BOOKING, (Action.CREATE, Action.READ, Action.UPDATE, Action.DELETE)),
        (Resource.PROVIDER_BOOKING, (Action.READ, Action.UPDATE)),
        (Resource.PAYMENT, (Action.CREATE, Action.READ, Action.UPDATE)),
        (Resource.WALLET, (Action.READ, Action.UPDATE)),
        (Resource.CREDITS, (Action.READ, Action.UPDATE)),
        (Resource.SUBSCRIPTION, (Action.READ, Action.UPDATE)),
    ],
)

GRANTS: Mapping[GrantKey, Possession] = MappingProxyType({**_CUSTOMER, **_PROVIDER, **_ADMIN})


def permission(role: UserRole, resource: Resource, action: Action) -> Optional[Possession]:
    """Return the possession scope granted for (role, resource, action), or None."""
    return GRANTS.get((UserRole(role), Resource(resource), Action(action)))
