"""
Guest ip address discovery.

Two sources, neither reliable on its own:

* vmware tools (``vmrun getGuestIPAddress -wait``) is authoritative but can
  block for a long, guest-dependent time;
* the host dhcp lease file can be read directly, keyed by the mac address
  from the instance's vmx file. Addresses show up there before the guest is
  reachable and later leases shadow earlier ones.

Deadlines are absolute time.monotonic() values. Only the polling loops
honor them; a single vmrun call cannot be interrupted.
"""

import ipaddress
import logging
import socket
import time
from pathlib import Path
from typing import Optional

from hobo.errors import AddressUnresolvedError, ExternalToolError, LeaseNotFoundError
from hobo.hypervisor import Hypervisor
from hobo.registry import Instance

logger = logging.getLogger(__name__)

SSH_PORT = 22
DEFAULT_REACHABLE_TIMEOUT = 30.0
LEASE_POLL_INTERVAL = 0.5
MAC_ADDRESS_KEY = "ethernet0.generatedAddress"


def read_mac_address(vmx_file: Path) -> str:
    """The generated mac address of the first network adapter in a vmx file."""
    with Path(vmx_file).open(encoding="utf-8", errors="replace") as f:
        for line in f:
            key, sep, value = line.strip().partition("=")
            if sep and key.strip() == MAC_ADDRESS_KEY:
                return value.strip().strip('"').lower()
    raise AddressUnresolvedError(f"no mac address found in vmx file: {vmx_file}")


def find_lease(lease_file: Path, mac_addr: str) -> str:
    """
    Return the ip of the last lease block for mac_addr.

    Lease blocks look like::

        lease 192.168.254.169 {
          ...
          hardware ethernet 00:0c:29:ff:94:8f;
        }

    Raises:
        LeaseNotFoundError: No block matches yet
        OSError: The lease file cannot be read
    """
    mac_addr = mac_addr.lower()
    ip_addr = ""
    lease_ip = None
    with Path(lease_file).open(encoding="utf-8", errors="replace") as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            fields = line.split()
            if fields[0] == "lease" and len(fields) >= 2:
                lease_ip = fields[1]
            elif line == "}":
                lease_ip = None
            elif lease_ip and line.startswith("hardware ethernet") and len(fields) >= 3:
                if fields[2].rstrip(";").lower() == mac_addr:
                    # Keep going, a later block wins.
                    ip_addr = lease_ip
    if not ip_addr:
        raise LeaseNotFoundError(mac_addr)
    return ip_addr


def _expired(deadline: Optional[float]) -> bool:
    return deadline is not None and time.monotonic() >= deadline


class NetworkAddressResolver:
    """Finds the address of a running instance."""

    def __init__(self, hypervisor: Hypervisor, lease_file: Path, port: int = SSH_PORT):
        self.hypervisor = hypervisor
        self.lease_file = Path(lease_file)
        self.port = port

    def query_tools(self, instance: Instance) -> str:
        """Ask vmware tools, blocking until it answers."""
        output = self.hypervisor.guest_ip_address(instance.vmx_file)
        lines = output.splitlines()
        candidate = lines[-1].strip() if lines else ""
        try:
            ipaddress.ip_address(candidate)
        except ValueError:
            raise AddressUnresolvedError(
                f"vmware tools returned no address for {instance.vmx_file}: {output.strip()!r}") from None
        return candidate

    def poll_lease(self, instance: Instance, deadline: Optional[float] = None,
                   interval: float = LEASE_POLL_INTERVAL) -> str:
        """
        Scan the lease file until the instance's mac address has a lease.

        A missing lease usually means vmware has not finished its internal
        allocation yet, so it is retried forever unless deadline passes.

        Raises:
            AddressUnresolvedError: deadline passed without a lease
        """
        mac_addr = read_mac_address(instance.vmx_file)
        logger.debug(f"Scanning {self.lease_file} for {mac_addr}")
        while True:
            try:
                return find_lease(self.lease_file, mac_addr)
            except LeaseNotFoundError:
                if _expired(deadline):
                    raise AddressUnresolvedError(
                        f"no dhcp lease for {mac_addr} ({instance.name}) before deadline") from None
                time.sleep(interval)

    def resolve(self, instance: Instance) -> str:
        """The recorded address if there is one, otherwise ask vmware tools."""
        if instance.ip_addr:
            return instance.ip_addr
        return self.query_tools(instance)

    def wait_for_reachable(self, ip_addr: str, deadline: Optional[float] = None) -> bool:
        """
        Poll the ssh port once a second until it accepts a connection.

        An open port does not mean sshd is ready to authenticate.

        Args:
            ip_addr: Address to connect to
            deadline: Give up at this time.monotonic() value (default 30s from now)

        Returns:
            True as soon as one connection succeeds, False on timeout
        """
        if deadline is None:
            deadline = time.monotonic() + DEFAULT_REACHABLE_TIMEOUT
        attempt = 0
        while time.monotonic() < deadline:
            attempt += 1
            try:
                with socket.create_connection((ip_addr, self.port), timeout=1):
                    logger.debug(f"Port {self.port} on {ip_addr} reachable after {attempt} attempts")
                    return True
            except OSError as e:
                if attempt == 1 or attempt % 10 == 0:
                    logger.debug(f"Connect attempt {attempt} to {ip_addr}:{self.port} failed: {e}")
                time.sleep(1)
        return False

    def acquire(self, instance: Instance, deadline: Optional[float] = None) -> str:
        """
        Address of a freshly started instance.

        vmware tools first, the lease file when tools fails, then wait for
        the ssh port. If the port never opens, ask tools again and trust its
        answer.
        """
        try:
            ip_addr = self.resolve(instance)
        except (ExternalToolError, AddressUnresolvedError) as e:
            logger.warning(f"vmware tools gave no address ({e}); scanning dhcp leases")
            ip_addr = self.poll_lease(instance, deadline)

        logger.info(f"Waiting for ssh on {ip_addr}")
        if self.wait_for_reachable(ip_addr, deadline):
            return ip_addr

        logger.warning(f"ssh on {ip_addr} not reachable, waiting for vmware tools to report an address")
        tools_ip = self.query_tools(instance)
        if tools_ip != ip_addr:
            logger.warning(f"vmware tools reports {tools_ip}, not {ip_addr}")
        return tools_ip
