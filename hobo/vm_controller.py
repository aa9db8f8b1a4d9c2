#!/usr/bin/env python3
"""
VM control for hobo.

VMController wires the artifact store, hypervisor, remote shell, address
resolver, registry and provisioning pipeline together and implements one
method per CLI command.
"""

import logging
import time
from pathlib import Path
from typing import List, Optional, Tuple

from hobo.artifacts import ArtifactStore
from hobo.config import LocalConfig
from hobo.errors import NotFoundError
from hobo.hypervisor import Hypervisor
from hobo.network import NetworkAddressResolver
from hobo.packaging import make_boxcar
from hobo.provision import ProvisioningPipeline
from hobo.registry import Instance, InstanceRegistry
from hobo.remote import RemoteShell, render_ssh_config
from hobo.utils import cleanup_old_logs

logger = logging.getLogger(__name__)


class VMController:
    """VM lifecycle management controller."""

    def __init__(self, config: LocalConfig, timeout: float = 0, debug: bool = False) -> None:
        """
        Args:
            config: Loaded local config
            timeout: Seconds allowed for address polling per invocation, 0 for unbounded
            debug: Keep process log files
        """
        self.config = config
        self.app_config = config.app_config
        self.timeout = timeout
        self.debug = debug

        self.hypervisor = Hypervisor(self.app_config, debug=debug)
        self.shell = RemoteShell(self.app_config, debug=debug)
        self.store = ArtifactStore(self.app_config.boxcars_dir)
        self.registry = InstanceRegistry(self.app_config, self.hypervisor)
        self.resolver = NetworkAddressResolver(self.hypervisor, Path(self.app_config.dhcp_lease_file))
        self.pipeline = ProvisioningPipeline(self.app_config, self.store, self.registry,
                                             self.hypervisor, self.shell, self.resolver, debug=debug)

        cleanup_old_logs(self.app_config.hobo_path)

    def _deadline(self) -> Optional[float]:
        if self.timeout and self.timeout > 0:
            return time.monotonic() + self.timeout
        return None

    def _read_instance(self) -> Instance:
        return self.registry.read(self.config.require_name())

    def fetch(self) -> Path:
        """Download and verify the configured boxcar."""
        return self.store.fetch(self.config.require_boxcar())

    def start_vm(self) -> str:
        """Start the VM, provisioning it first if it has never been bootstrapped."""
        name = self.config.require_name()
        deadline = self._deadline()
        try:
            instance = self.registry.read(name)
        except NotFoundError:
            logger.info(f"🚀 No vm named {name} yet, provisioning it")
            instance = self.pipeline.run(name, self.config.require_boxcar(), deadline)
            return instance.ip_addr

        logger.info(f"🚀 Starting {instance.vmx_file}")
        self.hypervisor.start(instance.vmx_file)

        ip_addr = self.resolver.resolve(instance)
        logger.info(f"Waiting for ssh on {ip_addr}")
        if not self.resolver.wait_for_reachable(ip_addr, deadline):
            # Give up and wait for vmware tools to give us the address.
            tools_ip = self.resolver.query_tools(instance)
            if tools_ip != ip_addr:
                logger.warning(f"vm {name} now has address {tools_ip}, recorded address is {ip_addr}")
            ip_addr = tools_ip
        logger.info(f"✅ VM {name} running on {ip_addr}")
        return ip_addr

    def stop_vm(self, force: bool = False) -> None:
        instance = self._read_instance()
        logger.info(f"Stopping {instance.name}{' (hard)' if force else ''}")
        self.hypervisor.stop(instance.vmx_file, hard=force)

    def suspend_vm(self) -> None:
        self.hypervisor.suspend(self._read_instance().vmx_file)

    def ip_addr(self) -> str:
        return self.resolver.resolve(self._read_instance())

    def vm_shell(self) -> None:
        instance = self._read_instance()
        ip_addr = self.resolver.resolve(instance)
        self.shell.interactive(ip_addr, instance.ssh_id)

    def ssh_config(self) -> str:
        instance = self._read_instance()
        ip_addr = self.resolver.resolve(instance)
        return render_ssh_config(instance.name, ip_addr, instance.ssh_id, self.app_config.ssh_user)

    def list_vms(self) -> List[Tuple[str, Path]]:
        """(name, vmx path) for every running VM."""
        return [(path.stem, path) for path in self.hypervisor.list_running()]

    def destroy_vm(self) -> None:
        self.registry.remove(self.config.require_name())

    def make_boxcar(self, vmwarevm_path: Path) -> Path:
        return make_boxcar(self.app_config, self.hypervisor, vmwarevm_path, debug=self.debug)
