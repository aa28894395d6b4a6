"""Bridge runtime: portals, puppets, local users and the root that ties them together."""

from qqbridge.bridge.bridge import QQBridge
from qqbridge.bridge.portal import FakeMessage, Portal, PortalMatrixMessage, PortalMessage, PortalState
from qqbridge.bridge.puppet import Puppet
from qqbridge.bridge.user import User

__all__ = [
    "FakeMessage",
    "Portal",
    "PortalMatrixMessage",
    "PortalMessage",
    "PortalState",
    "Puppet",
    "QQBridge",
    "User",
]
