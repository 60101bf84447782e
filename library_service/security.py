"""Role to capability mapping.

Routes declare the capability they need instead of comparing role strings;
``library_service.middleware.auth.require_capability`` enforces it.
"""
import enum
from dataclasses import dataclass, field


class Role(str, enum.Enum):
    USER = "User"
    LIBRARIAN = "Librarian"
    ADMIN = "Admin"


class Capability(str, enum.Enum):
    BORROW = "loans:borrow"
    MANAGE_LOANS = "loans:manage"
    RESERVE = "reservations:create"
    MANAGE_RESERVATIONS = "reservations:manage"
    MANAGE_STOCK = "stock:manage"
    READ_AUDIT = "audit:read"


_MEMBER = frozenset({Capability.BORROW, Capability.RESERVE})
_STAFF = _MEMBER | {Capability.MANAGE_LOANS, Capability.MANAGE_RESERVATIONS, Capability.MANAGE_STOCK}

ROLE_CAPABILITIES: dict[Role, frozenset[Capability]] = {
    Role.USER: _MEMBER,
    Role.LIBRARIAN: frozenset(_STAFF),
    Role.ADMIN: frozenset(_STAFF | {Capability.READ_AUDIT}),
}


def capabilities_for(roles) -> frozenset[Capability]:
    granted: set[Capability] = set()
    for name in roles:
        try:
            role = Role(name)
        except ValueError:
            continue
        granted |= ROLE_CAPABILITIES[role]
    return frozenset(granted)


@dataclass(frozen=True)
class Principal:
    user_id: int
    roles: tuple[str, ...] = ()
    capabilities: frozenset[Capability] = field(default_factory=frozenset)

    @classmethod
    def from_roles(cls, user_id: int, roles) -> "Principal":
        roles = tuple(roles)
        return cls(user_id=user_id, roles=roles, capabilities=capabilities_for(roles))

    def can(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def owns_or_can(self, owner_id: int, capability: Capability) -> bool:
        return self.user_id == owner_id or self.can(capability)
