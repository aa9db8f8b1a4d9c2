"""
Test configuration and shared fixtures for hobo tests.

Nothing here talks to a real hypervisor, network or guest: vmrun and ssh
are replaced by mocks, archives are built on the fly with tarfile.
"""

import hashlib
import io
import json
import subprocess
import tarfile
import tempfile
from pathlib import Path
from typing import Generator
from unittest.mock import Mock

import pytest

from hobo.artifacts import ArtifactStore
from hobo.config import BOOTSTRAP_SENTINEL, AppConfig, LocalConfig, TemplateRef
from hobo.hypervisor import Hypervisor
from hobo.network import NetworkAddressResolver
from hobo.provision import ProvisioningPipeline
from hobo.registry import InstanceRegistry
from hobo.remote import RemoteShell

GUEST_IP = "192.168.254.10"

SAMPLE_VMX = """.encoding = "UTF-8"
displayName = "demo"
ethernet0.present = "TRUE"
ethernet0.addressType = "generated"
ethernet0.generatedAddress = "00:0C:29:FF:94:8F"
ethernet0.generatedAddressOffset = "0"
"""


def build_boxcar_archive(dest: Path, name: str = "demo", include_vmx: bool = True,
                         disk: bytes = b"disk") -> str:
    """Write a <name>.vmwarevm tgz to dest and return its sha256."""
    with tarfile.open(dest, "w:gz") as tar:
        members = {f"{name}.vmwarevm/root.vmdk": disk}
        if include_vmx:
            members[f"{name}.vmwarevm/{name}.vmx"] = SAMPLE_VMX.encode()
        for member, data in members.items():
            info = tarfile.TarInfo(member)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return hashlib.sha256(dest.read_bytes()).hexdigest()


@pytest.fixture
def temp_home_dir() -> Generator[Path, None, None]:
    """Create a temporary home directory for testing."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture
def hobo_dir(temp_home_dir: Path) -> Path:
    return temp_home_dir / ".hobo.d"


@pytest.fixture
def app_config(hobo_dir: Path, temp_home_dir: Path) -> AppConfig:
    return AppConfig(
        hobo_dir=str(hobo_dir),
        dhcp_lease_file=str(temp_home_dir / "vmnet-dhcpd-vmnet8.leases"),
        vmrun_binary_path="/fake/vmrun",
    )


@pytest.fixture
def boxcar_archive(temp_home_dir: Path):
    """(path, sha256) of a well-formed demo boxcar."""
    src_dir = temp_home_dir / "src"
    src_dir.mkdir()
    archive = src_dir / "demo.tgz"
    return archive, build_boxcar_archive(archive)


@pytest.fixture
def template(boxcar_archive) -> TemplateRef:
    archive, sha256 = boxcar_archive
    return TemplateRef(
        name="demo",
        url=f"file://{archive}",
        sha256=sha256,
        version="1",
        bootstrap_cmd_lines=["touch /tmp/ok"],
    )


@pytest.fixture
def local_config(app_config: AppConfig, template: TemplateRef) -> LocalConfig:
    return LocalConfig(app_config, boxcar=template, name="demo-1")


@pytest.fixture
def config_file(temp_home_dir: Path, app_config: AppConfig, template: TemplateRef) -> Path:
    """A .hobo file describing local_config."""
    path = temp_home_dir / ".hobo"
    path.write_text(json.dumps({
        "AppConfig": {"HoboDir": app_config.hobo_dir, "VmrunBinaryPath": "/fake/vmrun"},
        "Boxcar": template.to_dict(),
        "Name": "demo-1",
    }))
    return path


@pytest.fixture
def mock_hypervisor() -> Mock:
    """Hypervisor whose clone writes the destination vmx like vmrun does."""
    hypervisor = Mock(spec=Hypervisor)

    def _clone(source_vmx, dest_vmx, clone_name):
        Path(dest_vmx).parent.mkdir(parents=True, exist_ok=True)
        Path(dest_vmx).write_text(Path(source_vmx).read_text())

    hypervisor.clone.side_effect = _clone
    hypervisor.list_running.return_value = []
    hypervisor.is_running.return_value = False
    hypervisor.guest_ip_address.return_value = GUEST_IP + "\n"
    return hypervisor


@pytest.fixture
def mock_shell() -> Mock:
    """RemoteShell that fakes key generation and a successful bootstrap."""
    shell = Mock(spec=RemoteShell)

    def _generate_key(key_path, comment="hobo-insecure"):
        Path(key_path).write_text("fake-private-key")
        Path(str(key_path) + ".pub").write_text(f"ssh-ed25519 AAAAfake {comment}")

    shell.generate_key.side_effect = _generate_key
    shell.run_script.return_value = subprocess.CompletedProcess(
        args=["ssh"], returncode=0, stdout=f"setting up\n{BOOTSTRAP_SENTINEL}\n")
    return shell


@pytest.fixture
def mock_resolver() -> Mock:
    resolver = Mock(spec=NetworkAddressResolver)
    resolver.acquire.return_value = GUEST_IP
    return resolver


@pytest.fixture
def registry(app_config: AppConfig, mock_hypervisor: Mock) -> InstanceRegistry:
    return InstanceRegistry(app_config, mock_hypervisor)


@pytest.fixture
def pipeline(app_config, registry, mock_hypervisor, mock_shell, mock_resolver) -> ProvisioningPipeline:
    store = ArtifactStore(app_config.boxcars_dir)
    return ProvisioningPipeline(app_config, store, registry, mock_hypervisor, mock_shell, mock_resolver)


# Test markers for organizing tests
pytest_markers = [
    pytest.mark.unit,
    pytest.mark.integration,
    pytest.mark.slow,
]


def pytest_configure(config):
    """Configure pytest with custom markers."""
    for marker in pytest_markers:
        config.addinivalue_line("markers", f"{marker.name}: {marker.name} tests")
