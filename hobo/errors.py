"""
Error taxonomy for hobo.

Every failure raised by the provisioning pipeline and its collaborators
derives from HoboError so the CLI can report it uniformly.
"""

import subprocess
from pathlib import Path
from typing import List, Optional, Union


class HoboError(Exception):
    """Base class for all hobo errors."""


class ConfigError(HoboError):
    """The config file or template descriptor is missing or malformed."""


class NotFoundError(HoboError):
    """No committed instance record exists for a name."""

    def __init__(self, name: str, config_file: Optional[Path] = None):
        self.name = name
        self.config_file = config_file
        where = f" ({config_file})" if config_file else ""
        super().__init__(f"no vm named {name!r}{where}")


class AlreadyExistsError(HoboError):
    """Refusing to overwrite an instance that has a committed record."""

    def __init__(self, config_file: Path):
        self.config_file = config_file
        super().__init__(f"cannot overwrite existing vm: {config_file}")


class IntegrityError(HoboError):
    """A boxcar archive does not match its declared sha256 digest."""

    def __init__(self, path: Path, expected: str, actual: str):
        self.path = path
        self.expected = expected
        self.actual = actual
        super().__init__(f"signature mismatch for {path}: {expected} != {actual}")


class InvalidTemplateError(HoboError):
    """An unpacked boxcar does not expose its vmx descriptor."""


class AddressUnresolvedError(HoboError):
    """No ip address could be found for an instance before the deadline."""


class LeaseNotFoundError(AddressUnresolvedError):
    """The dhcp lease file has no record for a mac address yet."""

    def __init__(self, mac_addr: str):
        self.mac_addr = mac_addr
        super().__init__(f"no ip address assignment found for mac addr {mac_addr} in dhcp lease file")


class BootstrapFailedError(HoboError):
    """The guest bootstrap script did not finish with the sentinel line."""

    def __init__(self, message: str, returncode: Optional[int] = None, output: str = ""):
        self.returncode = returncode
        self.output = output
        super().__init__(message)


class PromptDeclinedError(HoboError):
    """The operator did not confirm a destructive operation."""


class ExternalToolError(HoboError, subprocess.CalledProcessError):
    """An external program exited non-zero.

    Also a CalledProcessError, so callers that only know about subprocess
    failures still catch it.
    """

    def __init__(self, cmd: Union[List[str], str], returncode: int, output: str = ""):
        subprocess.CalledProcessError.__init__(self, returncode, cmd, output=output)

    def __str__(self):
        cmd = " ".join(self.cmd) if isinstance(self.cmd, (list, tuple)) else self.cmd
        text = f"cmd failed: {cmd} rc: {self.returncode}"
        if self.output:
            text += f"\noutput: {self.output.strip()}"
        return text
