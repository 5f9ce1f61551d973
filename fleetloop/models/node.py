"""
Node Model
==========
Pydantic model for one VPS in the test fleet.

Fields:
    name                — unique node identity (e.g. "saorsa-2")
    hostname            — preferred address for the remote channel
    ip                  — direct-address fallback when the hostname fails
    provider / region   — inventory metadata only
    role                — registry | bootstrap | test | nat-emulated
    nat_profile         — desired NAT behaviour from the inventory
    applied_nat_profile — what SETUP last asserted via configure_nat_profile;
                          nothing else writes it
    status              — online | degraded | unreachable
    last_checked        — time of the last health probe
"""
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class NodeRole(str, Enum):
    REGISTRY = "registry"
    BOOTSTRAP = "bootstrap"
    TEST = "test"
    NAT_EMULATED = "nat-emulated"


class NatProfile(str, Enum):
    NONE = "none"
    FULL_CONE = "full-cone"
    ADDRESS_RESTRICTED = "address-restricted"
    PORT_RESTRICTED = "port-restricted"
    SYMMETRIC = "symmetric"
    CGNAT = "cgnat"


class NodeStatus(str, Enum):
    ONLINE = "online"
    DEGRADED = "degraded"
    UNREACHABLE = "unreachable"


class Node(BaseModel):
    name: str
    hostname: str
    ip: str = ""
    provider: str = ""
    region: str = ""
    role: NodeRole = NodeRole.TEST
    nat_profile: NatProfile = NatProfile.NONE
    applied_nat_profile: Optional[NatProfile] = None
    status: NodeStatus = NodeStatus.UNREACHABLE
    last_checked: Optional[datetime] = None

    @property
    def addresses(self) -> list[str]:
        """Hostname first, then the direct IP if it differs."""
        out = [self.hostname]
        if self.ip and self.ip != self.hostname:
            out.append(self.ip)
        return out

    @property
    def reachable(self) -> bool:
        return self.status != NodeStatus.UNREACHABLE
