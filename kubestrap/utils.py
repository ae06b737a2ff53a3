"""Utility functions for the provisioning tool."""
import logging
import os
import shutil
import sys


def command_exists(command: str) -> bool:
    """Check if a command exists in the system PATH."""
    return shutil.which(command) is not None


def is_root() -> bool:
    """Check if the script is running as root."""
    return os.geteuid() == 0


def get_real_user() -> str:
    """Get the user who invoked sudo, or an empty string when not under sudo."""
    user = os.environ.get('SUDO_USER', '')
    if user == 'root':
        return ''
    return user


def get_real_home(user: str = '') -> str:
    """Get the home directory of the given user (or of the current user)."""
    if user:
        return os.path.expanduser(f'~{user}')
    return os.environ.get('HOME', '/root')


def log_info(message: str) -> None:
    """Log an informational message."""
    print(f"[INFO] {message}")


def log_action(message: str) -> None:
    """Log an action being performed."""
    print(f"  -> {message}")


def log_error(message: str) -> None:
    """Log an error to stderr."""
    print(f"[ERROR] {message}", file=sys.stderr)


def setup_logging(verbose: bool = False) -> None:
    """Setup logging configuration.

    Command lines and captured output go to the ``kubestrap`` logger at
    DEBUG, so they only show up with --verbose.
    """
    level = logging.DEBUG if verbose else logging.WARNING
    logger = logging.getLogger('kubestrap')
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter('[%(levelname)s] %(name)s: %(message)s'))
        logger.addHandler(handler)
    logger.setLevel(level)
    # sh logs every process start at INFO
    logging.getLogger('sh').setLevel(logging.WARNING)
