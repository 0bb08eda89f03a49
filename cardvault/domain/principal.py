"""Authenticated principals and their capabilities.

The authentication layer is an external collaborator; this module only
models the principal it hands over and the capability checks that guard
every buyer and admin entry point.
"""

from dataclasses import dataclass
from enum import Enum

from cardvault.domain.exceptions import PermissionDeniedError


class Role(str, Enum):
    """Role tag carried by a principal."""

    BUYER = "buyer"
    ADMIN = "admin"


class Capability(str, Enum):
    """Operations a principal may be allowed to perform."""

    PURCHASE = "purchase"
    REQUEST_REFUND = "request_refund"
    COMPLETE_ORDER = "complete_order"
    DECIDE_REFUND = "decide_refund"
    ATTEST_MANUAL_REFUND = "attest_manual_refund"
    RUN_MAINTENANCE = "run_maintenance"


_BUYER_CAPABILITIES = frozenset({Capability.PURCHASE, Capability.REQUEST_REFUND})

_ROLE_CAPABILITIES: dict[Role, frozenset[Capability]] = {
    Role.BUYER: _BUYER_CAPABILITIES,
    Role.ADMIN: _BUYER_CAPABILITIES
    | {
        Capability.COMPLETE_ORDER,
        Capability.DECIDE_REFUND,
        Capability.ATTEST_MANUAL_REFUND,
        Capability.RUN_MAINTENANCE,
    },
}


@dataclass(frozen=True)
class Principal:
    """An authenticated caller.

    Attributes:
        id: Stable user identifier from the identity provider.
        role: Role tag deciding the capability set.
        username: Display name, if known.
    """

    id: str
    role: Role
    username: str | None = None

    @property
    def capabilities(self) -> frozenset[Capability]:
        """Capabilities granted by the principal's role."""
        return _ROLE_CAPABILITIES[self.role]

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN

    def can(self, capability: Capability) -> bool:
        """Check whether the principal holds a capability.

        Args:
            capability: Capability to check.

        Returns:
            True if granted.
        """
        return capability in self.capabilities

    def require(self, capability: Capability) -> None:
        """Raise unless the principal holds a capability.

        Args:
            capability: Capability to check.

        Raises:
            PermissionDeniedError: If not granted.
        """
        if not self.can(capability):
            raise PermissionDeniedError(self.id, capability.value)
