"""
Build a boxcar archive from a prepared .vmwarevm directory.
"""

import logging
import shutil
import signal
import subprocess
from pathlib import Path

from hobo.config import AppConfig
from hobo.errors import ConfigError, ExternalToolError
from hobo.hypervisor import Hypervisor
from hobo.utils import run_subprocess

logger = logging.getLogger(__name__)

COMPRESSOR = "pigz"


def _clean_vm_dir(vmwarevm_path: Path) -> None:
    shutil.rmtree(vmwarevm_path / "caches", ignore_errors=True)
    for pattern in ("*.log", "*.lck"):
        for path in vmwarevm_path.glob(pattern):
            if path.is_dir():
                shutil.rmtree(path)
            else:
                path.unlink()


def compress_tree(vmwarevm_path: Path, archive: Path, tar_binary: str = "tar") -> None:
    """
    Stream ``tar cf -`` of vmwarevm_path through pigz into archive.

    Both processes run concurrently and are both waited for; the first one
    to fail is reported. When pigz dies first tar is killed by SIGPIPE, so
    that case reports pigz. A partial archive is removed.
    """
    tar_cmd = [tar_binary, "cf", "-", "-C", str(vmwarevm_path.parent), vmwarevm_path.name]
    logger.debug(f"Running command: {' '.join(tar_cmd)} | {COMPRESSOR}")
    try:
        with archive.open("wb") as fout:
            tar = subprocess.Popen(tar_cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
            pigz = subprocess.Popen([COMPRESSOR], stdin=tar.stdout, stdout=fout,
                                    stderr=subprocess.PIPE)
            # pigz owns the read end now; tar gets SIGPIPE if pigz dies.
            tar.stdout.close()
            tar_err = tar.stderr.read()
            pigz_err = pigz.stderr.read()
            tar_rc = tar.wait()
            pigz_rc = pigz.wait()
            tar.stderr.close()
            pigz.stderr.close()
        tar_broken_pipe = tar_rc == -signal.SIGPIPE and pigz_rc != 0
        if tar_rc != 0 and not tar_broken_pipe:
            raise ExternalToolError(tar_cmd, tar_rc, tar_err.decode("utf-8", "replace"))
        if pigz_rc != 0:
            raise ExternalToolError([COMPRESSOR], pigz_rc, pigz_err.decode("utf-8", "replace"))
    except BaseException:
        archive.unlink(missing_ok=True)
        raise


def make_boxcar(app_config: AppConfig, hypervisor: Hypervisor, vmwarevm_path: Path,
                debug: bool = False) -> Path:
    """
    Turn a .vmwarevm directory into <dir>.tgz.

    The vm is booted and hard-stopped once so vmware settles its files, then
    caches, logs and lock files are dropped and root.vmdk is shrunk.

    Returns:
        Path of the archive
    """
    vmwarevm_path = Path(vmwarevm_path)
    if not vmwarevm_path.is_dir():
        raise ConfigError(f"make-boxcar requires a path to an existing vmwarevm directory: {vmwarevm_path}")
    root_vmdk = vmwarevm_path / "root.vmdk"
    if not root_vmdk.exists():
        raise ConfigError(f"vmwarevm directory must have a root.vmdk: {root_vmdk}")

    hypervisor.start(vmwarevm_path)
    hypervisor.stop(vmwarevm_path, hard=True)

    _clean_vm_dir(vmwarevm_path)

    logger.info(f"🔧 Shrinking {root_vmdk}")
    for flag in ("-d", "-k"):
        run_subprocess([app_config.vdisk_manager_binary_path, flag, str(root_vmdk)],
                       state_dir=app_config.hobo_path, debug=debug, check=True)

    archive = vmwarevm_path.with_name(vmwarevm_path.name + ".tgz")
    logger.info(f"Compressing {vmwarevm_path}")
    compress_tree(vmwarevm_path, archive, tar_binary=app_config.tar_binary_path)
    logger.info(f"✅ Created {archive}")
    return archive
