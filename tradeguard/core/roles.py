"""Role definitions for TradeGuard.

Roles are a closed enumeration. Policy fields that hold several roles
(chain approver roles, guard exceptions, emergency override roles) use
``RoleSet``, which is parsed strictly so that a misspelled role name is a
configuration error instead of a silently disabled control.
"""

from enum import Enum
from typing import FrozenSet, Iterable, Iterator, List, Optional, Union

from .errors import ValidationError


class Role(str, Enum):
    """User roles known to the business application."""

    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    MANAGER = "manager"
    FINANCE = "finance"
    PURCHASING = "purchasing"
    SALES = "sales"
    WAREHOUSE = "warehouse"
    WORKER = "worker"
    VIEWER = "viewer"
    SYSTEM = "system"  # scheduler and other automated actors

    @classmethod
    def parse(cls, value: Union[str, "Role"]) -> "Role":
        """Parse a role name, raising ValidationError on unknown names."""
        if isinstance(value, Role):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError(
                f"Unknown role: {value!r}",
                details={"allowed": [r.value for r in cls]},
            ) from None


class RoleSet:
    """Immutable set of roles.

    Extending a set returns a new set; the stored representation is a
    sorted list of role names.
    """

    __slots__ = ("_roles",)

    def __init__(self, roles: Optional[Iterable[Union[str, Role]]] = None):
        self._roles: FrozenSet[Role] = frozenset(Role.parse(r) for r in (roles or []))

    @classmethod
    def from_config(cls, value: Optional[Iterable[Union[str, Role]]]) -> "RoleSet":
        if value is None:
            return cls()
        if isinstance(value, (str, bytes)):
            raise ValidationError("Role list must be a list of role names, not a string")
        return cls(value)

    def extend(self, *roles: Union[str, Role]) -> "RoleSet":
        return RoleSet([*self._roles, *roles])

    def to_list(self) -> List[str]:
        return sorted(r.value for r in self._roles)

    def __contains__(self, role: object) -> bool:
        if role is None:
            return False
        if isinstance(role, Role):
            return role in self._roles
        try:
            return Role(str(role)) in self._roles
        except ValueError:
            return False

    def __iter__(self) -> Iterator[Role]:
        return iter(sorted(self._roles, key=lambda r: r.value))

    def __len__(self) -> int:
        return len(self._roles)

    def __bool__(self) -> bool:
        return bool(self._roles)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, RoleSet):
            return self._roles == other._roles
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._roles)

    def __repr__(self) -> str:
        return f"RoleSet({self.to_list()!r})"


# Roles that may cancel any request and approve under chains without explicit approver roles
ADMIN_ROLES = RoleSet([Role.SUPER_ADMIN, Role.ADMIN])
