"""
Wrapper around the vmrun hypervisor control program.

vmrun exits 0 on success and prints its diagnostics to stdout or stderr on
failure; every call here raises ExternalToolError on a non-zero exit.
"""

import logging
from pathlib import Path
from typing import List, Optional

from hobo.config import AppConfig
from hobo.utils import exec_replace, run_subprocess

logger = logging.getLogger(__name__)


class Hypervisor:
    """Runs vmrun subcommands for one host type."""

    def __init__(self, app_config: AppConfig, debug: bool = False):
        self.binary = app_config.vmrun_binary_path
        self.host_type = app_config.host_type
        self.state_dir = app_config.hobo_path
        self.debug = debug

    def _cmd(self, *args: str) -> List[str]:
        return [self.binary, "-T", self.host_type, *args]

    def _run(self, *args: str, vm_name: Optional[str] = None) -> str:
        result = run_subprocess(self._cmd(*args), state_dir=self.state_dir,
                                vm_name=vm_name, debug=self.debug, check=True)
        return result.stdout

    def list_running(self) -> List[Path]:
        """Descriptor paths of every running VM."""
        output = self._run("list")
        return [Path(line.strip()) for line in output.splitlines()
                if line.strip().endswith(".vmx")]

    def is_running(self, vmx_file: Path) -> bool:
        vmx_file = Path(vmx_file).resolve()
        return any(path.resolve() == vmx_file for path in self.list_running())

    def start(self, vmx_file: Path) -> None:
        self._run("start", str(vmx_file), "nogui", vm_name=Path(vmx_file).stem)

    def stop(self, vmx_file: Path, hard: bool = False) -> None:
        args = ["stop", str(vmx_file)]
        if hard:
            args.append("hard")
        self._run(*args, vm_name=Path(vmx_file).stem)

    def clone(self, source_vmx: Path, dest_vmx: Path, clone_name: str) -> None:
        """Full clone, so the instance does not depend on the template afterwards."""
        self._run("clone", str(source_vmx), str(dest_vmx), "full",
                  f"-cloneName={clone_name}", vm_name=clone_name)

    def guest_ip_address(self, vmx_file: Path) -> str:
        """Ask vmware tools in the guest for its address.

        Blocks until the guest reports one or vmrun gives up, which can take
        a very long time.
        """
        output = self._run("getGuestIPAddress", str(vmx_file), "-wait",
                           vm_name=Path(vmx_file).stem)
        return output.strip()

    def suspend(self, vmx_file: Path) -> None:
        """Replace this process with vmrun suspend."""
        exec_replace(self._cmd("suspend", str(vmx_file)))
