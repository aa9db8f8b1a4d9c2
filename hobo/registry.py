"""
Per-instance metadata.

Each instance lives in its own directory, {HoboDir}/vms/{name}.vmwarevm/,
and its record is hobo/config.json inside that directory. Deleting the
directory is all it takes to deprovision an instance. A record is only ever
written once the guest has been bootstrapped, so "record exists" means
"instance is usable".
"""

import json
import logging
import re
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

from hobo.config import AppConfig, TemplateRef
from hobo.errors import ConfigError, NotFoundError
from hobo.hypervisor import Hypervisor
from hobo.utils import write_file_atomic

logger = logging.getLogger(__name__)

# The zero timestamp means "never bootstrapped".
ZERO_TIME = "0001-01-01T00:00:00Z"

_FRACTION_RE = re.compile(r"\.(\d+)")


def format_timestamp(value: Optional[datetime]) -> str:
    if value is None:
        return ZERO_TIME
    return value.isoformat()


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp, returning None for the zero value."""
    if not value or value == ZERO_TIME or value.startswith("0001-01-01"):
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # Other writers use nanosecond precision; datetime stops at microseconds.
    text = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    try:
        return datetime.fromisoformat(text)
    except ValueError as e:
        raise ConfigError(f"invalid TimeBootstrapped timestamp: {value!r}") from e


class Instance:
    """A VM cloned from a boxcar, plus the paths derived from its name."""

    def __init__(self, name: str, path: Path, boxcar: Optional[TemplateRef] = None):
        self.name = name
        self.path = Path(path)
        self.boxcar = boxcar
        self.ip_addr = ""
        self.time_bootstrapped: Optional[datetime] = None

    @property
    def vmx_file(self) -> Path:
        return self.path / f"{self.path.stem}.vmx"

    @property
    def config_file(self) -> Path:
        return self.path / "hobo" / "config.json"

    @property
    def ssh_id(self) -> Path:
        return self.path / "hobo-insecure"

    @property
    def ssh_id_pub(self) -> Path:
        return self.path / "hobo-insecure.pub"

    @property
    def is_bootstrapped(self) -> bool:
        return self.time_bootstrapped is not None

    def mark_bootstrapped(self, ip_addr: str, when: Optional[datetime] = None) -> None:
        self.ip_addr = ip_addr
        self.time_bootstrapped = when or datetime.now(timezone.utc).astimezone()

    def to_dict(self) -> Dict:
        data = {
            "TimeBootstrapped": format_timestamp(self.time_bootstrapped),
            "IpAddr": self.ip_addr,
        }
        if self.boxcar is not None:
            data["Boxcar"] = self.boxcar.to_dict()
        return data

    def load_dict(self, data: Dict) -> None:
        self.time_bootstrapped = parse_timestamp(data.get("TimeBootstrapped"))
        self.ip_addr = data.get("IpAddr") or ""
        if data.get("Boxcar"):
            self.boxcar = TemplateRef.from_dict(data["Boxcar"])


class InstanceRegistry:
    """Creates, reads, writes and removes instance records under vms_dir."""

    def __init__(self, app_config: AppConfig, hypervisor: Hypervisor):
        self.vms_dir = app_config.vms_dir
        self.hypervisor = hypervisor

    def instance_path(self, name: str) -> Path:
        if not name or "/" in name or name in (".", ".."):
            raise ConfigError(f"invalid vm name: {name!r}")
        return self.vms_dir / f"{name}.vmwarevm"

    def create(self, name: str, boxcar: Optional[TemplateRef] = None) -> Instance:
        """A handle for name; nothing is written to disk."""
        return Instance(name, self.instance_path(name), boxcar=boxcar)

    def exists(self, name: str) -> bool:
        return self.create(name).config_file.exists()

    def read(self, name: str) -> Instance:
        """
        Load the committed record for name.

        Raises:
            NotFoundError: There is no committed record
            ConfigError: The record is not valid JSON
        """
        instance = self.create(name)
        try:
            with instance.config_file.open() as f:
                data = json.load(f)
        except FileNotFoundError:
            raise NotFoundError(name, instance.config_file) from None
        except json.JSONDecodeError as e:
            raise ConfigError(f"invalid vm record {instance.config_file}: {e}") from e
        instance.load_dict(data)
        return instance

    def write(self, instance: Instance) -> None:
        instance.config_file.parent.mkdir(parents=True, exist_ok=True)
        write_file_atomic(instance.config_file, json.dumps(instance.to_dict(), indent=2) + "\n")
        logger.debug(f"Wrote vm record {instance.config_file}")

    def remove(self, name: str) -> None:
        """
        Stop the VM if it is running, then delete its whole directory.

        Raises:
            NotFoundError: There is no directory for name
            ExternalToolError: The VM could not be stopped; nothing is deleted
        """
        instance = self.create(name)
        if not instance.path.exists():
            raise NotFoundError(name, instance.path)

        if instance.vmx_file.exists() and self.hypervisor.is_running(instance.vmx_file):
            logger.info("Stopping running VM before removing it...")
            self.hypervisor.stop(instance.vmx_file, hard=True)

        shutil.rmtree(instance.path)
        logger.info(f"VM removed: {instance.path}")
