"""
Configuration for hobo.

Normally every operator has an arena directory holding all hobo files:

    ~/.hobo.d/                  - the arena (HoboDir)
    ~/.hobo.d/cache/boxcars/    - cached boxcar archives and unpacked templates
    ~/.hobo.d/vms/              - the instances, the important stuff
    ~/.hobo                     - user config
    ./.hobo                     - local config, wins over ~/.hobo

Config files are JSON with the keys AppConfig, Boxcar and Name.
"""

import json
import logging
import os
import re
import shlex
from pathlib import Path
from typing import Dict, List, Optional

from hobo.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_HOBO_DIR = "$HOME/.hobo.d"
DEFAULT_CONFIG_FILE = "./.hobo"

BOOTSTRAP_SENTINEL = "hobo-bootstrap-ok"

_SHA256_RE = re.compile(r"^[0-9a-fA-F]{64}$")


class AppConfig:
    """Host-level settings: where the tools live and where hobo keeps its data."""

    # JSON key -> (attribute, default)
    FIELDS = {
        "VmrunBinaryPath": ("vmrun_binary_path", "/Applications/VMware Fusion.app/Contents/Library/vmrun"),
        "VdiskManagerBinaryPath": ("vdisk_manager_binary_path",
                                   "/Applications/VMware Fusion.app/Contents/Library/vmware-vdiskmanager"),
        "HoboDir": ("hobo_dir", ""),
        "HostType": ("host_type", "fusion"),
        "DhcpLeaseFile": ("dhcp_lease_file", "/var/db/vmware/vmnet-dhcpd-vmnet8.leases"),
        "SshUser": ("ssh_user", "hobo"),
        "SshBinaryPath": ("ssh_binary_path", "ssh"),
        "ScpBinaryPath": ("scp_binary_path", "scp"),
        "SshKeygenBinaryPath": ("ssh_keygen_binary_path", "ssh-keygen"),
        "TarBinaryPath": ("tar_binary_path", "tar"),
        "BootstrapKeyPath": ("bootstrap_key_path", ""),
    }

    def __init__(self, **kwargs):
        for attr, default in self.FIELDS.values():
            setattr(self, attr, kwargs.pop(attr, default))
        if kwargs:
            raise TypeError(f"unknown AppConfig fields: {', '.join(sorted(kwargs))}")

    @classmethod
    def from_dict(cls, data: Dict) -> "AppConfig":
        kwargs = {}
        for key, value in data.items():
            if key not in cls.FIELDS:
                logger.warning(f"Ignoring unknown AppConfig field: {key}")
                continue
            kwargs[cls.FIELDS[key][0]] = value
        return cls(**kwargs)

    def to_dict(self) -> Dict:
        return {key: getattr(self, attr) for key, (attr, _) in self.FIELDS.items()}

    @property
    def hobo_path(self) -> Path:
        return Path(os.path.expandvars(self.hobo_dir or DEFAULT_HOBO_DIR)).expanduser()

    @property
    def vms_dir(self) -> Path:
        return self.hobo_path / "vms"

    @property
    def boxcars_dir(self) -> Path:
        return self.hobo_path / "cache" / "boxcars"

    @property
    def bootstrap_key(self) -> Path:
        """Private half of the shared insecure bootstrap key."""
        if self.bootstrap_key_path:
            return Path(os.path.expandvars(self.bootstrap_key_path)).expanduser()
        return self.hobo_path / "hobo-bootstrap-insecure"


class TemplateRef:
    """An immutable boxcar descriptor.

    Name and Version are labels only; Sha256 is what ties the descriptor to
    the archive bytes.
    """

    def __init__(self, name: str, url: str, sha256: str, version: str = "",
                 bootstrap_cmd_lines: Optional[List[str]] = None):
        self.name = name
        self.url = url
        self.sha256 = sha256.lower()
        self.version = version
        self.bootstrap_cmd_lines = list(bootstrap_cmd_lines or [])

    @classmethod
    def from_dict(cls, data: Dict) -> "TemplateRef":
        for key in ("Name", "Url", "Sha256"):
            if not data.get(key):
                raise ConfigError(f"boxcar is missing required field: {key}")
        if not isinstance(data["Sha256"], str) or not _SHA256_RE.match(data["Sha256"]):
            raise ConfigError(f"boxcar Sha256 must be 64 hex characters: {data['Sha256']!r}")
        cmd_lines = data.get("BootstrapCmdLines") or []
        if not isinstance(cmd_lines, list) or not all(isinstance(line, str) for line in cmd_lines):
            raise ConfigError("boxcar BootstrapCmdLines must be a list of strings")
        return cls(
            name=data["Name"],
            url=data["Url"],
            sha256=data["Sha256"],
            version=data.get("Version", ""),
            bootstrap_cmd_lines=cmd_lines,
        )

    @classmethod
    def from_file(cls, fname: Path) -> "TemplateRef":
        return cls.from_dict(_read_json(Path(fname)))

    def to_dict(self) -> Dict:
        return {
            "Name": self.name,
            "Url": self.url,
            "Version": self.version,
            "Sha256": self.sha256,
            "BootstrapCmdLines": list(self.bootstrap_cmd_lines),
        }

    def bootstrap_script(self, host_user: Optional[str] = None) -> str:
        """The shell script run once inside a fresh guest.

        The last line echoes BOOTSTRAP_SENTINEL; seeing it as the last line
        of output is the only proof that every command ran.
        """
        if host_user is None:
            host_user = os.environ.get("LOGNAME", "")
        cmd_lines = [
            f"export HOBO_HOST_USER={shlex.quote(host_user)}",
            "export HOBO_CMD=bootstrap",
            "cd /tmp",
        ]
        cmd_lines.extend(self.bootstrap_cmd_lines)
        cmd_lines.append(f"echo {BOOTSTRAP_SENTINEL}")
        return "\n".join(cmd_lines)


class LocalConfig:
    """Everything one invocation needs: host settings, the boxcar and the instance name."""

    def __init__(self, app_config: AppConfig, boxcar: Optional[TemplateRef] = None,
                 name: str = "", source: Optional[Path] = None):
        self.app_config = app_config
        self.boxcar = boxcar
        self.name = name
        self.source = source

    def require_boxcar(self) -> TemplateRef:
        if self.boxcar is None:
            raise ConfigError(f"no Boxcar defined in {self.source or 'config'}")
        return self.boxcar

    def require_name(self) -> str:
        if not self.name:
            raise ConfigError(f"no Name defined in {self.source or 'config'}")
        return self.name


def _read_json(fname: Path) -> Dict:
    try:
        with fname.open() as f:
            data = json.load(f)
    except OSError as e:
        raise ConfigError(f"failed reading config {fname}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"invalid JSON in {fname}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"config {fname} must contain a JSON object")
    return data


def find_config_file(fname: Optional[str] = DEFAULT_CONFIG_FILE) -> Optional[Path]:
    """Return the first existing of fname, ./.hobo and ~/.hobo."""
    for name in [fname, ".hobo", "$HOME/.hobo"]:
        if not name:
            continue
        path = Path(os.path.expandvars(name)).expanduser()
        if path.is_file():
            return path
    return None


def load_local_config(fname: Optional[Path], hobo_dir: Optional[str] = None) -> LocalConfig:
    """
    Build a LocalConfig from a config file.

    Args:
        fname: Config file to read, or None for built-in defaults only
        hobo_dir: Arena directory used when the file does not set HoboDir

    Raises:
        ConfigError: The file is unreadable or malformed
    """
    data = _read_json(fname) if fname else {}

    app_config = AppConfig.from_dict(data.get("AppConfig") or {})
    if not app_config.hobo_dir:
        app_config.hobo_dir = hobo_dir or DEFAULT_HOBO_DIR

    boxcar = TemplateRef.from_dict(data["Boxcar"]) if data.get("Boxcar") else None
    return LocalConfig(app_config, boxcar=boxcar, name=data.get("Name", ""), source=fname)
