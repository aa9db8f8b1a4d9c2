#!/usr/bin/env python3
"""
Common utilities for hobo.

This module contains the shared logging setup and the process runner used
to drive every external program (vmrun, ssh, tar, ...).
"""

import atexit
import logging
import os
import subprocess
import sys
import tempfile
import time
from pathlib import Path
from typing import List, Optional, Union

from hobo.errors import ExternalToolError


# Color codes for terminal output
class Colors:
    """ANSI color codes for terminal output."""
    RESET = '\033[0m'
    BOLD = '\033[1m'
    DIM = '\033[2m'

    RED = '\033[31m'
    GREEN = '\033[32m'
    WHITE = '\033[37m'

    BRIGHT_RED = '\033[91m'
    BRIGHT_GREEN = '\033[92m'
    BRIGHT_YELLOW = '\033[93m'
    BRIGHT_BLUE = '\033[94m'
    BRIGHT_MAGENTA = '\033[95m'
    BRIGHT_CYAN = '\033[96m'


class ColorFormatter(logging.Formatter):
    """Custom formatter with color support."""

    COLORS = {
        logging.DEBUG: Colors.DIM + Colors.WHITE,
        logging.INFO: Colors.BRIGHT_BLUE,
        logging.WARNING: Colors.BRIGHT_YELLOW,
        logging.ERROR: Colors.BRIGHT_RED,
        logging.CRITICAL: Colors.BOLD + Colors.BRIGHT_RED,
    }

    def format(self, record):
        color = self.COLORS.get(record.levelno, Colors.RESET)
        formatted = super().format(record)

        if hasattr(sys.stderr, 'isatty') and sys.stderr.isatty():
            level_color = color + record.levelname + Colors.RESET
            formatted = formatted.replace(record.levelname, level_color, 1)

            message = record.getMessage()
            if "✅" in message:
                formatted = Colors.BRIGHT_GREEN + formatted + Colors.RESET
            elif "🚀" in message:
                formatted = Colors.BRIGHT_MAGENTA + formatted + Colors.RESET
            elif "🔧" in message:
                formatted = Colors.BRIGHT_CYAN + formatted + Colors.RESET

        return formatted


def setup_logging(verbose: bool = False, logger_name: Optional[str] = "hobo") -> logging.Logger:
    """
    Set up colored logging configuration.

    Args:
        verbose: Enable debug logging if True
        logger_name: Name of the logger to configure (None for the root logger)

    Returns:
        Configured logger instance
    """
    level = logging.DEBUG if verbose else logging.INFO

    logger = logging.getLogger(logger_name) if logger_name else logging.getLogger()

    formatter = ColorFormatter(
        fmt="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S"
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    logger.setLevel(level)
    logger.handlers = [handler]
    logger.propagate = False

    return logger


logger = logging.getLogger(__name__)

# Log files handed out by ProcessWithOutput that still need removing at exit
_temp_files: List[str] = []


def _cleanup_tempfiles():
    """Remove any log files still registered for cleanup."""
    for name in _temp_files:
        try:
            os.unlink(name)
        except OSError:
            pass
    _temp_files.clear()


def cleanup_old_logs(state_dir: Optional[Path], max_age_days: int = 7) -> None:
    """
    Remove process log files older than max_age_days.

    Logs live in {state_dir}/tmp/logs/ and in {state_dir}/vms/*/tmp/logs/.
    """
    if not state_dir or not state_dir.exists():
        return

    cutoff_time = time.time() - (max_age_days * 24 * 60 * 60)
    log_dirs = [state_dir / "tmp" / "logs"]
    vms_dir = state_dir / "vms"
    if vms_dir.is_dir():
        log_dirs.extend(vm_dir / "tmp" / "logs" for vm_dir in vms_dir.iterdir() if vm_dir.is_dir())

    for log_dir in log_dirs:
        if not log_dir.is_dir():
            continue
        for log_file in log_dir.glob("*.log"):
            try:
                if log_file.stat().st_mtime < cutoff_time:
                    log_file.unlink()
                    logger.debug(f"Cleaned up old log file: {log_file}")
            except OSError:
                pass  # Raced with another cleanup


def get_last_lines(file_path: Union[str, Path], num_lines: int = 20) -> List[str]:
    """Get the last N lines from a file."""
    try:
        with open(file_path, 'r', encoding='utf-8', errors='replace') as f:
            lines = f.readlines()
            return lines[-num_lines:] if len(lines) > num_lines else lines
    except OSError as e:
        logger.warning(f"Failed to read log file {file_path}: {e}")
        return []


class ProcessWithOutput:
    """
    Wrapper for subprocess.Popen that captures combined output to a log file.

    vmrun writes its diagnostics to stdout or stderr depending on the
    subcommand, so both streams go to the same file in the order they
    were written.
    """

    def __init__(self, cmd: List[str], state_dir: Optional[Path] = None,
                 vm_name: Optional[str] = None, debug: bool = False, **kwargs):
        """
        Start the process.

        Args:
            cmd: Command to run as list of strings
            state_dir: Directory whose tmp/logs/ subdirectory receives the log
            vm_name: VM name used as the log file prefix
            debug: Keep the log file even when the process succeeds
            **kwargs: Additional keyword arguments for subprocess.Popen
        """
        if state_dir:
            log_dir = state_dir / "tmp" / "logs"
            log_dir.mkdir(parents=True, exist_ok=True)
        else:
            log_dir = Path(tempfile.gettempdir())
        log_prefix = f"{vm_name}_" if vm_name else "hobo_"

        self.output_log = tempfile.NamedTemporaryFile(mode='w+', prefix=f'{log_prefix}output_',
                                                      suffix='.log', delete=False, dir=log_dir,
                                                      encoding='utf-8', errors='replace')
        _temp_files.append(self.output_log.name)

        kwargs.setdefault('stdin', subprocess.DEVNULL)
        kwargs['stdout'] = self.output_log
        kwargs['stderr'] = subprocess.STDOUT

        logger.debug(f"Running command: {' '.join(cmd)}")
        if debug:
            logger.debug(f"output log: {self.output_log.name}")

        self.cmd = cmd
        self.debug = debug
        self.process = subprocess.Popen(cmd, **kwargs)
        self.pid = self.process.pid

    def wait(self, timeout: Optional[float] = None) -> int:
        """Wait for the process and log the tail of its output on failure."""
        try:
            returncode = self.process.wait(timeout)
        except subprocess.TimeoutExpired:
            logger.error(f"Process timed out: {' '.join(self.cmd)}")
            self.process.kill()
            self.process.wait()
            raise
        self.output_log.flush()

        if returncode != 0:
            logger.error(f"Command failed with exit code {returncode}: {' '.join(self.cmd)}")
            if self.debug:
                logger.error(f"output log path: {self.output_log.name}")
            lines = get_last_lines(self.output_log.name, 20)
            if lines:
                logger.error("Last 20 lines of output:")
                for line in lines:
                    logger.error(f"output: {line.rstrip()}")
        return returncode

    def read_output(self) -> str:
        self.output_log.seek(0)
        return self.output_log.read()

    def cleanup(self) -> None:
        """Close and remove the log file."""
        self.output_log.close()
        try:
            os.unlink(self.output_log.name)
        except OSError:
            pass
        if self.output_log.name in _temp_files:
            _temp_files.remove(self.output_log.name)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.process.poll() is None:
            self.process.kill()
            self.process.wait()
        if self.debug:
            self.output_log.close()
            if self.output_log.name in _temp_files:
                _temp_files.remove(self.output_log.name)
        else:
            self.cleanup()


def run_subprocess(cmd: List[str], state_dir: Optional[Path] = None,
                   vm_name: Optional[str] = None, debug: bool = False,
                   check: bool = False, timeout: Optional[float] = None,
                   **kwargs) -> subprocess.CompletedProcess:
    """
    Run a program and capture its stdout and stderr interleaved.

    Never retries. The combined output is returned as the ``stdout`` of the
    CompletedProcess (``stderr`` is always None).

    Args:
        cmd: Command to run as list of strings
        state_dir: Directory whose tmp/logs/ subdirectory receives the log
        vm_name: VM name for log organization
        debug: Keep the log file after the process exits
        check: Raise ExternalToolError on a non-zero exit
        timeout: Seconds to wait before killing the process
        **kwargs: Additional keyword arguments for subprocess.Popen

    Returns:
        CompletedProcess with the combined output in stdout
    """
    with ProcessWithOutput(cmd, state_dir=state_dir, vm_name=vm_name,
                           debug=debug, **kwargs) as proc:
        returncode = proc.wait(timeout=timeout)
        output = proc.read_output()

    if check and returncode != 0:
        raise ExternalToolError(cmd, returncode, output)

    return subprocess.CompletedProcess(args=cmd, returncode=returncode, stdout=output, stderr=None)


def write_file_atomic(path: Path, data: str, mode: int = 0o644) -> None:
    """Write data to path so readers see either the old or the new content."""
    path = Path(path)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}-", dir=path.parent)
    try:
        with os.fdopen(fd, "w") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


def exec_replace(cmd: List[str]) -> None:
    """
    Replace the current process with cmd.

    Used for interactive sessions that must own the terminal; the exit code
    of cmd becomes the exit code of hobo. Only returns by raising OSError.
    """
    logger.debug(f"Exec: {' '.join(cmd)}")
    sys.stdout.flush()
    sys.stderr.flush()
    os.execvp(cmd[0], cmd)


# Register cleanup function to run at exit
atexit.register(_cleanup_tempfiles)
