"""
Main entry point for the hobo command-line interface.

This module contains the CLI command definitions. The VM management
functionality lives in vm_controller.py.
"""

import logging
import subprocess
from pathlib import Path
from typing import Callable, TypeVar

import typer

from hobo.config import DEFAULT_CONFIG_FILE, DEFAULT_HOBO_DIR, find_config_file, load_local_config
from hobo.errors import ConfigError, HoboError, NotFoundError, PromptDeclinedError
from hobo.utils import setup_logging
from hobo.vm_controller import VMController

logger = logging.getLogger("hobo")

T = TypeVar("T")

# Global state for options
_global_state = {
    "config_file": DEFAULT_CONFIG_FILE,
    "hobo_dir": DEFAULT_HOBO_DIR,
    "verbose": False,
    "debug": False,
    "timeout": 0,
}

app = typer.Typer(
    name="hobo",
    help="Manage local virtual machines cloned from boxcar archives",
    epilog="""
Configuration is read from --config-file, ./.hobo, or ~/.hobo - whichever occurs first.

Examples:
  hobo start
  hobo ssh
  hobo ssh-config >> ~/.ssh/config
  hobo stop --force
  hobo rm
  hobo make-boxcar ~/vms/ubuntu.vmwarevm
    """,
    no_args_is_help=True,
)


@app.callback()
def main_callback(
    config_file: str = typer.Option(DEFAULT_CONFIG_FILE, "--config-file", help="Local config file"),
    hobo_dir: str = typer.Option(DEFAULT_HOBO_DIR, "--hobo-dir", help="Directory for all hobo vm data"),
    timeout: float = typer.Option(0, "--timeout", "-t",
                                  help="Timeout in seconds for address discovery (0 means unbounded)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug logging and keep process logs"),
) -> None:
    """Handle global options."""
    _global_state["config_file"] = config_file
    _global_state["hobo_dir"] = hobo_dir
    _global_state["timeout"] = timeout
    _global_state["verbose"] = verbose
    _global_state["debug"] = debug

    setup_logging(verbose=verbose or debug)
    if debug:
        logger.debug("Debug mode enabled - process logs are kept")


def _controller(require_config: bool = True) -> VMController:
    fname = find_config_file(_global_state["config_file"]) if require_config else None
    if require_config and fname is None:
        raise ConfigError("fill out a .hobo file")
    config = load_local_config(fname, hobo_dir=_global_state["hobo_dir"])
    return VMController(config, timeout=_global_state["timeout"], debug=_global_state["debug"])


def _invoke(action: Callable[[], T]) -> T:
    """Run action and map failures to exit codes."""
    try:
        return action()
    except subprocess.CalledProcessError as e:
        logger.error(f"Command failed with exit code {e.returncode}: {e}")
        raise typer.Exit(e.returncode)
    except KeyboardInterrupt:
        logger.info("Operation cancelled by user")
        raise typer.Exit(130)
    except HoboError as e:
        logger.error(f"Failed: {e}")
        raise typer.Exit(1)
    except Exception as e:
        logger.error(f"Unexpected error: {e}")
        raise typer.Exit(1)


@app.command()
def start() -> None:
    """Start the vm, fetching and bootstrapping it first if needed."""
    _invoke(lambda: _controller().start_vm())


@app.command()
def stop(
    force: bool = typer.Option(False, "--force", help="Aggressively stop the vm")
) -> None:
    """Stop the vm."""
    _invoke(lambda: _controller().stop_vm(force))


@app.command()
def suspend() -> None:
    """Suspend the vm."""
    _invoke(lambda: _controller().suspend_vm())


@app.command("ip-addr")
def ip_addr() -> None:
    """Print the current ip address of the vm."""
    typer.echo(_invoke(lambda: _controller().ip_addr()))


@app.command()
def ssh() -> None:
    """Open an ssh session in the vm."""
    _invoke(lambda: _controller().vm_shell())


@app.command("ssh-config")
def ssh_config() -> None:
    """Print an ssh config clause for the vm."""
    typer.echo(_invoke(lambda: _controller().ssh_config()))


@app.command("ls")
def list_vms() -> None:
    """Show all running vms."""
    for name, path in _invoke(lambda: _controller().list_vms()):
        typer.echo(f"{name} {path}")


@app.command("rm")
def remove() -> None:
    """Destroy the vm and permanently remove all data files."""
    def _remove():
        controller = _controller()
        name = controller.config.require_name()
        instance = controller.registry.create(name)
        if not instance.path.exists():
            raise NotFoundError(name, instance.path)
        reply = typer.prompt("Permanently remove vm and all data? [yes/NO]",
                             default="", show_default=False)
        if reply.strip() != "yes":
            raise PromptDeclinedError("aborted: prompt declined")
        controller.destroy_vm()

    _invoke(_remove)


@app.command()
def fetch() -> None:
    """Pull down the boxcar archive."""
    _invoke(lambda: _controller().fetch())


@app.command("make-boxcar")
def make_boxcar_cmd(
    vmwarevm_path: Path = typer.Argument(..., help="Path to a <boxcar name>.vmwarevm directory")
) -> None:
    """Create a new boxcar archive from a vmwarevm directory."""
    _invoke(lambda: _controller(require_config=False).make_boxcar(vmwarevm_path))


def main() -> None:
    """Main entry point for the hobo command."""
    app()


if __name__ == "__main__":
    main()
