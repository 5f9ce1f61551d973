"""
NAT Profile Configurator
========================
``configure_nat_profile(node, profile)``: one operation over the closed set
of NAT behaviours. Each variant maps onto the node-side NAT simulation
script set, which owns the actual namespace / iptables rules:

    none .. symmetric → ``deploy-nat-type.sh <arg>``
    cgnat             → ``NAT_CGNAT_SCRIPT`` (scripts/nat-simulation/nat-type-cgnat.sh)

Idempotent: the node scripts record the active type in
``/etc/nat-sim/nat-type``. The recorded value is not always the script
argument (``addr_restricted`` writes ``address_restricted``), so the read
back is compared against NAT_TYPE_VALUES. When it already matches,
nothing is re-applied.
"""
import logging
import shlex
from dataclasses import dataclass

from fleetloop.core.config import NAT_CGNAT_SCRIPT, NAT_CONFIG_TIMEOUT, NAT_SCRIPT_DIR
from fleetloop.core.errors import RemoteConnectError, RemoteTimeoutError
from fleetloop.models.node import NatProfile, Node

logger = logging.getLogger(__name__)

NAT_TYPE_FILE = "/etc/nat-sim/nat-type"

# Profile → argument understood by deploy-nat-type.sh
NAT_SCRIPT_TYPES = {
    NatProfile.NONE: "public",
    NatProfile.FULL_CONE: "full_cone",
    NatProfile.ADDRESS_RESTRICTED: "addr_restricted",
    NatProfile.PORT_RESTRICTED: "port_restricted",
    NatProfile.SYMMETRIC: "symmetric",
}

# Profile → value the node scripts write to NAT_TYPE_FILE
NAT_TYPE_VALUES = {
    NatProfile.NONE: "public",
    NatProfile.FULL_CONE: "full_cone",
    NatProfile.ADDRESS_RESTRICTED: "address_restricted",
    NatProfile.PORT_RESTRICTED: "port_restricted",
    NatProfile.SYMMETRIC: "symmetric",
    NatProfile.CGNAT: "cgnat",
}


@dataclass
class NatConfigResult:
    node: str
    profile: NatProfile
    success: bool = False
    changed: bool = False
    detail: str = ""


class NatProfileConfigurator:

    def __init__(self, executor, script_dir: str = NAT_SCRIPT_DIR,
                 timeout: float = NAT_CONFIG_TIMEOUT,
                 cgnat_script: str = NAT_CGNAT_SCRIPT) -> None:
        self.executor = executor
        self.script_dir = script_dir
        self.timeout = timeout
        self.cgnat_script = cgnat_script

    async def current_profile(self, node: Node) -> str:
        result = await self.executor.run(
            node, f"cat {NAT_TYPE_FILE} 2>/dev/null || true", timeout=30
        )
        return result.stdout.strip()

    def apply_command(self, profile: NatProfile) -> str:
        prefix = f"cd {shlex.quote(self.script_dir)} && "
        if profile == NatProfile.CGNAT:
            return prefix + f"bash ./{shlex.quote(self.cgnat_script)}"
        return prefix + f"./deploy-nat-type.sh {shlex.quote(NAT_SCRIPT_TYPES[profile])}"

    async def configure_nat_profile(self, node: Node, profile: NatProfile) -> NatConfigResult:
        """Assert ``profile`` on ``node``. Never raises for per-node failures."""
        wanted = NAT_TYPE_VALUES[profile]
        outcome = NatConfigResult(node=node.name, profile=profile)
        try:
            if await self.current_profile(node) == wanted:
                outcome.success = True
                outcome.detail = f"already {wanted}"
                logger.info("[%s] NAT profile already %s", node.name, wanted)
                return outcome

            result = await self.executor.run(node, self.apply_command(profile), timeout=self.timeout)
            if result.exit_code != 0:
                outcome.detail = (result.stderr or result.stdout).strip()[-500:]
                logger.error("[%s] NAT profile %s failed: %s", node.name, wanted, outcome.detail)
                return outcome

            applied = await self.current_profile(node)
            outcome.changed = True
            outcome.success = applied == wanted
            outcome.detail = f"applied {applied or 'unknown'}"
            if not outcome.success:
                logger.error("[%s] NAT profile verification failed: wanted %s, node reports %s",
                             node.name, wanted, applied or "nothing")
            return outcome

        except (RemoteConnectError, RemoteTimeoutError) as exc:
            outcome.detail = str(exc)
            logger.warning("[%s] NAT profile %s not applied: %s", node.name, wanted, exc)
            return outcome
