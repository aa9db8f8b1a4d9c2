"""
Instance provisioning pipeline.

fetch -> guard-existing -> unpack -> clone -> keygen -> boot -> trust ->
bootstrap -> commit

Stages only move forward. Any failure aborts the run and leaves the
instance directory in place for inspection; since the record is written
in the commit stage only, the next run purges the leftovers and starts
over from a clean directory.
"""

import enum
import fcntl
import logging
import shutil
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, Iterator, Optional

from hobo.artifacts import ArtifactStore
from hobo.config import BOOTSTRAP_SENTINEL, AppConfig, TemplateRef
from hobo.errors import AlreadyExistsError, BootstrapFailedError, InvalidTemplateError
from hobo.hypervisor import Hypervisor
from hobo.network import NetworkAddressResolver
from hobo.registry import Instance, InstanceRegistry
from hobo.remote import RemoteShell, ensure_bootstrap_key
from hobo.utils import run_subprocess, write_file_atomic

logger = logging.getLogger(__name__)

UNPACK_MARKER = ".hobo-unpacked"


class Stage(enum.Enum):
    FETCH = "fetch"
    GUARD_EXISTING = "guard-existing"
    UNPACK = "unpack"
    CLONE = "clone"
    KEYGEN = "keygen"
    BOOT = "boot"
    TRUST = "trust"
    BOOTSTRAP = "bootstrap"
    COMMIT = "commit"
    DONE = "done"


_STAGE_ORDER = list(Stage)


class ProvisionState:
    """Where a provisioning run is, and what it has learned so far."""

    def __init__(self, instance: Instance, template: TemplateRef, deadline: Optional[float] = None):
        self.instance = instance
        self.template = template
        self.deadline = deadline
        self.stage = Stage.FETCH
        self.archive: Optional[Path] = None
        self.ip_addr = ""

    def advance(self, stage: Stage) -> None:
        if _STAGE_ORDER.index(stage) < _STAGE_ORDER.index(self.stage):
            raise RuntimeError(f"cannot move from stage {self.stage.value} back to {stage.value}")
        self.stage = stage
        logger.info(f"{self.instance.name}: stage {stage.value}")


def bootstrap_succeeded(returncode: int, output: str) -> bool:
    """A bootstrap worked only if it exited 0 and its last non-blank line is the sentinel."""
    if returncode != 0:
        return False
    lines = [line.strip() for line in output.splitlines() if line.strip()]
    return bool(lines) and lines[-1] == BOOTSTRAP_SENTINEL


@contextmanager
def file_lock(lock_path: Path) -> Iterator[None]:
    """Hold an exclusive advisory lock on lock_path for the duration of the block."""
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a") as f:
        fcntl.flock(f.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(f.fileno(), fcntl.LOCK_UN)


class ProvisioningPipeline:
    """Turns a boxcar and a name into a bootstrapped, recorded instance."""

    def __init__(self, app_config: AppConfig, store: ArtifactStore, registry: InstanceRegistry,
                 hypervisor: Hypervisor, shell: RemoteShell, resolver: NetworkAddressResolver,
                 debug: bool = False):
        self.app_config = app_config
        self.store = store
        self.registry = registry
        self.hypervisor = hypervisor
        self.shell = shell
        self.resolver = resolver
        self.debug = debug

    def template_dir(self, template: TemplateRef) -> Path:
        return self.app_config.boxcars_dir / f"{template.name}.vmwarevm"

    def template_vmx(self, template: TemplateRef) -> Path:
        return self.template_dir(template) / f"{template.name}.vmx"

    def unpack_marker(self, template: TemplateRef) -> Path:
        return self.template_dir(template) / UNPACK_MARKER

    def run(self, name: str, template: TemplateRef, deadline: Optional[float] = None) -> Instance:
        """
        Provision name from template, leaving the VM running.

        Args:
            name: Instance name
            template: Boxcar to clone from
            deadline: time.monotonic() value bounding the address polling

        Returns:
            The committed instance

        Raises:
            HoboError: Whatever stage failed first, unchanged
        """
        state = ProvisionState(self.registry.create(name, boxcar=template), template, deadline)
        steps: Dict[Stage, Callable[[ProvisionState], None]] = {
            Stage.FETCH: self._fetch,
            Stage.GUARD_EXISTING: self._guard_existing,
            Stage.UNPACK: self._unpack,
            Stage.CLONE: self._clone,
            Stage.KEYGEN: self._keygen,
            Stage.BOOT: self._boot,
            Stage.TRUST: self._trust,
            Stage.BOOTSTRAP: self._bootstrap,
            Stage.COMMIT: self._commit,
        }
        for stage, step in steps.items():
            state.advance(stage)
            try:
                step(state)
            except Exception as e:
                logger.error(f"Provisioning {name} failed at stage {stage.value}: {e}")
                raise
        state.advance(Stage.DONE)
        logger.info(f"✅ Instance {name} running guest on {state.ip_addr}")
        return state.instance

    def _fetch(self, state: ProvisionState) -> None:
        state.archive = self.store.fetch(state.template)

    def _guard_existing(self, state: ProvisionState) -> None:
        instance = state.instance
        if instance.config_file.exists():
            raise AlreadyExistsError(instance.config_file)

        # A vmx file without a record is a clone that never finished.
        if instance.vmx_file.exists():
            logger.warning(f"Purging partially provisioned vm {instance.path}")
            if self.hypervisor.is_running(instance.vmx_file):
                self.hypervisor.stop(instance.vmx_file, hard=True)
            shutil.rmtree(instance.path)

        self.app_config.vms_dir.mkdir(parents=True, exist_ok=True)

    def _unpack(self, state: ProvisionState) -> None:
        template = state.template
        boxcars_dir = self.app_config.boxcars_dir
        marker = self.unpack_marker(template)

        with file_lock(boxcars_dir / f".{template.name}.lock"):
            # The marker holds the sha256 of the archive that was unpacked.
            unpacked = marker.read_text().strip() if marker.exists() else ""
            if unpacked != template.sha256:
                template_dir = self.template_dir(template)
                if template_dir.exists():
                    logger.info(f"Replacing template {template_dir} unpacked from {unpacked or 'unknown'}")
                    shutil.rmtree(template_dir)
                logger.info(f"🔧 Unpacking boxcar {state.archive}")
                run_subprocess([self.app_config.tar_binary_path, "xzf", str(state.archive),
                                "-C", str(boxcars_dir)],
                               state_dir=self.app_config.hobo_path, debug=self.debug, check=True)
                if not self.template_vmx(template).exists():
                    raise InvalidTemplateError(
                        f"invalid boxcar, missing vmx file: {self.template_vmx(template)}")
                write_file_atomic(marker, template.sha256 + "\n")

        if not self.template_vmx(template).exists():
            raise InvalidTemplateError(f"invalid boxcar, missing vmx file: {self.template_vmx(template)}")

    def _clone(self, state: ProvisionState) -> None:
        instance = state.instance
        logger.info(f"Cloning vm {instance.name} from {state.template.name}")
        instance.path.mkdir(parents=True, exist_ok=True)
        self.hypervisor.clone(self.template_vmx(state.template), instance.vmx_file, instance.name)

    def _keygen(self, state: ProvisionState) -> None:
        self.shell.generate_key(state.instance.ssh_id, comment=f"hobo-{state.instance.name}")

    def _boot(self, state: ProvisionState) -> None:
        instance = state.instance
        logger.info(f"🚀 Starting vm for bootstrap {instance.vmx_file}")
        self.hypervisor.start(instance.vmx_file)
        logger.info(f"Waiting for vm ip address {instance.vmx_file}")
        state.ip_addr = self.resolver.acquire(instance, state.deadline)

    def _trust(self, state: ProvisionState) -> None:
        bootstrap_key = ensure_bootstrap_key(self.app_config.bootstrap_key)
        self.shell.probe(state.ip_addr, bootstrap_key)
        self.shell.install_authorized_key(state.ip_addr, bootstrap_key, state.instance.ssh_id_pub)

    def _bootstrap(self, state: ProvisionState) -> None:
        logger.info(f"Bootstrapping guest on {state.ip_addr}")
        result = self.shell.run_script(state.ip_addr, state.instance.ssh_id,
                                       state.template.bootstrap_script())
        if not bootstrap_succeeded(result.returncode, result.stdout):
            logger.error(f"bootstrap out: {result.stdout}")
            raise BootstrapFailedError(
                f"bootstrap of {state.instance.name} did not finish (rc: {result.returncode})",
                returncode=result.returncode, output=result.stdout)

    def _commit(self, state: ProvisionState) -> None:
        state.instance.mark_bootstrapped(state.ip_addr)
        self.registry.write(state.instance)
