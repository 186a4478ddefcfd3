"""
主机部署器 - docker / podman (本机或 WSL 发行版)

两种安装来源:
1. 压缩包 - 下载/解压后运行 installsensor.sh, 传感器会自我更新
2. 镜像仓库 - 拉取 qualys/qcs-sensor 镜像后直接启动容器
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional

from ..collectors.models import (
    InstallPlan,
    RuntimeKind,
    SensorInstance,
    SourceKind,
    Target,
)
from ..collectors.runtime_client import RuntimeClient
from ..config import HostInstallConfig, InstallerSettings
from ..utils.errors import DeployError, InstallerErrorCode
from .archive import ArchiveFetcher
from .base import BaseDeployer

logger = logging.getLogger(__name__)

CONTAINER_SOCKET = "/var/run/docker.sock"
CONTAINER_DATA_DIR = "/usr/local/qualys/qpa/data"

# 安装脚本的运行时参数 (存储驱动约定不同)
INSTALLER_RUNTIME_FLAGS = {
    RuntimeKind.DOCKER: ["StorageDriverType=overlay2"],
    RuntimeKind.PODMAN: ["ContainerRuntime=podman", "StorageDriverType=overlay"],
}


class HostDeployer(BaseDeployer):
    """容器运行时目标的部署器

    Args:
        target: 部署目标
        config: 主机安装参数 (凭据, 来源, 附加选项)
        settings: 可调参数
        client: 目标运行时的客户端
        fetcher: 压缩包获取器
        sleep: 等待函数
    """

    def __init__(
        self,
        target: Target,
        config: HostInstallConfig,
        settings: InstallerSettings,
        client: RuntimeClient,
        fetcher: Optional[ArchiveFetcher] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        super().__init__(
            target,
            verify_timeout=settings.verify_timeout,
            verify_interval=settings.verify_interval,
            sleep=sleep,
        )
        self.config = config
        self.settings = settings
        self.client = client
        self.fetcher = fetcher or ArchiveFetcher(
            settings.work_path,
            attempts=settings.fetch_attempts,
            backoff=settings.fetch_backoff,
            sleep=sleep,
        )
        self.container_name = settings.container_name

    # === 状态 ===

    def query_instance(self) -> SensorInstance:
        exists = bool(self.client.list(self.container_name))
        running = exists and self.client.is_running(self.container_name)

        identity = None
        if running and self.config.source_kind is SourceKind.REGISTRY:
            identity = self.client.image_identity(self.container_name)

        instance = SensorInstance(
            exists=exists,
            running=running,
            image_identity=identity,
            source_kind=self.config.source_kind,
        )
        logger.info(f"[{self.target.name}] 现有实例: "
                    f"exists={instance.exists} running={instance.running}")
        return instance

    def is_running(self) -> bool:
        return self.client.is_running(self.container_name)

    def diagnostics(self) -> Dict[str, Any]:
        logs = self.client.logs(self.container_name, tail=50)
        if logs:
            logger.error(f"[{self.target.name}] 容器日志:\n{logs}")
        return {"logs": logs} if logs else {}

    # === 部署 ===

    def teardown(self, instance: SensorInstance, plan: InstallPlan) -> None:
        if instance.running:
            self.client.stop(self.container_name)
        self.client.remove(self.container_name)
        logger.info(f"[{self.target.name}] 已移除现有容器 {self.container_name}")

    def install(self, plan: InstallPlan) -> None:
        if self.config.source_kind is SourceKind.REGISTRY:
            self.install_from_registry()
        else:
            self.install_from_archive()

    def ensure_storage_dir(self) -> None:
        """在执行上下文中创建传感器存储目录"""
        storage = self.settings.storage_dir
        result = self.client.execute(["mkdir", "-p", storage])
        if not result["success"]:
            raise DeployError(
                f"无法创建存储目录 {storage}",
                code=InstallerErrorCode.STORAGE_DIR_FAILED,
                target=self.target.name,
                details={"stderr": result.get("error")},
            )

    def install_from_archive(self) -> None:
        """下载压缩包, 解压并运行安装脚本"""
        location = self.config.archive_location
        with self.fetcher.workspace(self.target) as workdir:
            archive = self.fetcher.fetch(location, workdir)
            script = self.fetcher.extract(archive, workdir / "installer")

            self.ensure_storage_dir()

            cmd = self.installer_command(self.client.context_path(str(script)))
            logger.info(f"[{self.target.name}] 运行安装脚本: {_mask(cmd, self.config)}")
            result = self.client.execute(cmd, timeout=self.settings.command_timeout * 5)
            if not result["success"]:
                raise DeployError(
                    "传感器安装脚本执行失败",
                    code=InstallerErrorCode.INSTALLER_FAILED,
                    target=self.target.name,
                    details={"stderr": result.get("error")},
                )
        logger.info(f"[{self.target.name}] 安装脚本执行完成")

    def installer_command(self, script: str) -> List[str]:
        """构建 installsensor.sh 命令行"""
        return [
            script,
            f"ActivationId={self.config.activation_id}",
            f"CustomerId={self.config.customer_id}",
            f"Storage={self.settings.storage_dir}",
            "-s",
            *INSTALLER_RUNTIME_FLAGS[self.target.runtime],
            "--perform-sca-scan",
            *self.config.install_options,
        ]

    def install_from_registry(self) -> None:
        """拉取镜像并启动容器"""
        socket = self.client.socket_path()
        if not self.client.socket_exists(socket):
            raise DeployError(
                f"运行时 socket 不存在: {socket}",
                code=InstallerErrorCode.SOCKET_UNAVAILABLE,
                target=self.target.name,
            )

        self.ensure_storage_dir()

        logger.info(f"[{self.target.name}] 拉取镜像 {self.settings.image}...")
        self.client.pull(self.settings.image)

        container_id = self.client.run(self.run_arguments(socket))
        logger.info(f"[{self.target.name}] 容器已启动: {container_id[:12]}")

    def run_arguments(self, socket: str) -> List[str]:
        """构建 `<runtime> run` 的参数"""
        return [
            "-d", "--restart", "on-failure",
            "-v", f"{socket}:{CONTAINER_SOCKET}:ro",
            "-v", f"{self.settings.storage_dir}:{CONTAINER_DATA_DIR}",
            "-e", f"ACTIVATIONID={self.config.activation_id}",
            "-e", f"CUSTOMERID={self.config.customer_id}",
            "-e", f"POD_URL={self.config.pod_url}",
            "--net=host",
            "--name", self.container_name,
            self.settings.image,
            "--perform-sca-scan",
            *self.config.install_options,
        ]


def _mask(cmd: List[str], config: HostInstallConfig) -> str:
    """日志中隐藏激活 ID"""
    return " ".join(cmd).replace(config.activation_id, "****")
