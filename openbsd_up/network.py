"""Network argument generation and bridge provisioning for openbsd-up."""

from __future__ import annotations

import subprocess
from typing import List, Optional

from openbsd_up.exceptions import CommandError
from openbsd_up.models import PortForward
from openbsd_up.utils import log, run


def parse_port_forwards(port_forward: Optional[str]) -> List[PortForward]:
    """Split ``host:guest[,host:guest]`` into pairs. Malformed pairs pass through as-is."""
    if not port_forward:
        return []
    forwards = []
    for pair in port_forward.split(","):
        host_port, _, guest_port = pair.partition(":")
        forwards.append(PortForward(host_port, guest_port))
    return forwards


def port_forwarding_args(port_forward: Optional[str]) -> str:
    return ",".join(
        f"hostfwd=tcp::{pf.host_port}-:{pf.guest_port}" for pf in parse_port_forwards(port_forward)
    )


def nat_netdev(port_forward: Optional[str]) -> str:
    forwarding = port_forwarding_args(port_forward)
    if not forwarding:
        return "user,id=net0"
    return f"user,id=net0,{forwarding}"


def bridge_netdev(bridge: str) -> str:
    return f"bridge,id=net0,br={bridge}"


def format_ports(port_forward: Optional[str]) -> str:
    """Render forwards for tables, e.g. ``2222->22, 8080->80``."""
    forwards = parse_port_forwards(port_forward)
    if not forwards:
        return "-"
    return ", ".join(f"{pf.host_port}->{pf.guest_port}" for pf in forwards)


def bridge_exists(bridge: str) -> bool:
    result = subprocess.run(
        ["ip", "link", "show", bridge],
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        check=False,
    )
    return result.returncode == 0


def ensure_bridge(bridge: str) -> None:
    """Create and bring up the host bridge if it does not exist yet."""
    try:
        if bridge_exists(bridge):
            log("DEBUG", f"Bridge {bridge} already exists")
            return
    except FileNotFoundError as exc:
        raise CommandError("The 'ip' command is required to manage network bridges", exit_code=127) from exc

    log("INFO", f"Creating network bridge {bridge}...")
    run(["sudo", "ip", "link", "add", bridge, "type", "bridge"], capture_output=True)
    run(["sudo", "ip", "link", "set", bridge, "up"], capture_output=True)
    log("SUCCESS", f"Network bridge {bridge} created")
