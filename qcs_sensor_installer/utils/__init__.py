"""
工具模块
"""

from .errors import (
    InstallerError,
    InstallerErrorCode,
    DeployError,
    ConfigError,
    CommandError,
    describe_exit_code,
)
from .retry import bounded_retry, poll_until
from .shell import CommandRunner

__all__ = [
    "InstallerError",
    "InstallerErrorCode",
    "DeployError",
    "ConfigError",
    "CommandError",
    "describe_exit_code",
    "bounded_retry",
    "poll_until",
    "CommandRunner",
]
