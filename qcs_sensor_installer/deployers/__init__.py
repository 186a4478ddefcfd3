"""
部署器模块

根据目标的运行时类型创建对应的部署器
"""

import sys
import time
from typing import Callable, Optional, Union

from ..collectors.k8s_client import HelmWrapper, KubectlWrapper
from ..collectors.models import RuntimeKind, Target
from ..collectors.runtime_client import CliRuntimeClient
from ..config import ClusterInstallConfig, HostInstallConfig, InstallerSettings
from ..utils.errors import DeployError, InstallerErrorCode
from ..utils.shell import CommandRunner
from .archive import ArchiveFetcher
from .base import BaseDeployer
from .cluster import ClusterDeployer
from .host import HostDeployer


def create_deployer(
    target: Target,
    config: Union[HostInstallConfig, ClusterInstallConfig],
    settings: InstallerSettings,
    runner: Optional[CommandRunner] = None,
    manifest: Optional[str] = None,
    sleep: Callable[[float], None] = time.sleep,
    platform: Optional[str] = None,
) -> BaseDeployer:
    """
    为目标创建部署器

    Args:
        target: 部署目标
        config: 主机或集群安装参数 (须与目标类型匹配)
        settings: 可调参数
        runner: 命令执行器
        manifest: 清单内容 (manifest 目标)
        sleep: 等待函数
        platform: 平台标识 (默认 sys.platform)

    Raises:
        DeployError: 目标与参数类型不匹配, 或 Windows 本机上下文 (20)
    """
    runner = runner or CommandRunner(default_timeout=settings.command_timeout)

    if target.runtime in (RuntimeKind.DOCKER, RuntimeKind.PODMAN):
        if not isinstance(config, HostInstallConfig):
            raise DeployError(
                "容器运行时目标需要主机安装参数",
                code=InstallerErrorCode.CONFIG_ERROR,
                target=target.name,
            )
        if target.wsl_distro is None and (platform or sys.platform) == "win32":
            raise DeployError(
                "Windows 本机上下文不支持部署, 请通过 WSL 发行版部署",
                code=InstallerErrorCode.INCOMPATIBLE_PLATFORM,
                target=target.name,
            )
        return HostDeployer(
            target,
            config,
            settings,
            client=CliRuntimeClient(target, runner=runner),
            sleep=sleep,
        )

    if target.is_cluster:
        if not isinstance(config, ClusterInstallConfig):
            raise DeployError(
                "集群目标需要集群安装参数",
                code=InstallerErrorCode.CONFIG_ERROR,
                target=target.name,
            )
        return ClusterDeployer(
            target,
            config,
            settings,
            kubectl=KubectlWrapper(runner=runner),
            helm=HelmWrapper(runner=runner),
            manifest=manifest,
            sleep=sleep,
        )

    raise DeployError(
        f"不支持的运行时: {target.runtime}",
        code=InstallerErrorCode.CONFIG_ERROR,
        target=target.name,
    )


__all__ = [
    "ArchiveFetcher",
    "BaseDeployer",
    "ClusterDeployer",
    "HostDeployer",
    "create_deployer",
]
