"""
运行时探测

检测主机上可达的容器运行时和执行上下文 (Linux 本机, Windows 上每个运行中的 WSL 发行版, K8s 集群),
每个可达的 (上下文, 运行时) 组合都是独立的部署目标。
单个运行时不可达不是错误, 只有所有上下文都找不到目标时才终止运行。
"""

import logging
import sys
from typing import Callable, List, Optional

from ..utils.errors import InstallerError, InstallerErrorCode
from ..utils.shell import CommandRunner
from .k8s_client import HelmWrapper, KubectlWrapper
from .models import (
    CLUSTER_CONTEXT,
    NATIVE_CONTEXT,
    WSL_CONTEXT_PREFIX,
    RuntimeKind,
    Target,
)
from .runtime_client import CliRuntimeClient, RuntimeClient

logger = logging.getLogger(__name__)

CONTAINER_RUNTIMES = (RuntimeKind.DOCKER, RuntimeKind.PODMAN)

# 节点属于 K8s 集群的标志文件
K8S_MARKER_FILES = (
    "/etc/kubernetes/kubelet.conf",
    "/var/lib/kubelet/config.yaml",
    "/etc/kubernetes/admin.conf",
)

# Docker Desktop 内部使用的发行版, 不是部署目标
WSL_SKIPPED_PREFIXES = ("docker-desktop",)


class RuntimeProbe:
    """运行时探测器

    Args:
        runner: 命令执行器
        platform: 平台标识 (默认 sys.platform)
        client_factory: 为目标构建 RuntimeClient 的工厂 (测试注入)
    """

    def __init__(
        self,
        runner: Optional[CommandRunner] = None,
        platform: Optional[str] = None,
        client_factory: Optional[Callable[[Target], RuntimeClient]] = None,
    ):
        self.runner = runner or CommandRunner()
        self.platform = platform or sys.platform
        self.client_factory = client_factory or (
            lambda target: CliRuntimeClient(target, runner=self.runner)
        )

    # === 主机 ===

    def probe(self) -> List[Target]:
        """
        探测主机上全部可达的容器运行时

        Linux 上探测本机; Windows 上只探测运行中的 WSL 发行版

        Returns:
            按 (上下文) x (docker, podman) 顺序排列的目标列表

        Raises:
            InstallerError: 平台不支持 (20) 或没有任何可达运行时 (2)
        """
        if not (self.platform.startswith("linux") or self.platform == "win32"):
            raise InstallerError(
                f"不支持的平台: {self.platform}",
                code=InstallerErrorCode.INCOMPATIBLE_PLATFORM,
            )

        if self.platform == "win32":
            # Windows 本机上下文 (Docker Desktop 的 docker.exe) 不是部署目标,
            # 引擎通过 WSL 集成在各发行版中可达
            targets = []
            for distro in self.list_wsl_distros():
                targets.extend(self._probe_context(f"{WSL_CONTEXT_PREFIX}{distro}"))
            hint = "Windows 上需要至少一个运行中且装有 Docker/Podman 的 WSL 发行版"
        else:
            targets = self._probe_context(NATIVE_CONTEXT)
            hint = "Docker 或 Podman"

        if not targets:
            raise InstallerError(
                f"未检测到可达的容器运行时 ({hint})",
                code=InstallerErrorCode.NO_RUNTIME,
            )

        logger.info(f"检测到 {len(targets)} 个部署目标: "
                    f"{', '.join(t.name for t in targets)}")
        return targets

    def _probe_context(self, context: str) -> List[Target]:
        found = []
        for kind in CONTAINER_RUNTIMES:
            target = Target(context=context, runtime=kind)
            if not self._binary_present(target):
                logger.debug(f"{target.name}: 未安装")
                continue

            if self.client_factory(target).info():
                logger.info(f"检测到运行时 {target.name}")
                found.append(target)
            else:
                logger.warning(f"{target.name} 已安装但不可达, 跳过")
        return found

    def _binary_present(self, target: Target) -> bool:
        distro = target.wsl_distro
        if distro is None:
            return self.runner.which(target.runtime.value) is not None

        result = self.runner.run(
            ["wsl.exe", "-d", distro, "--", "which", target.runtime.value], timeout=20
        )
        return result["success"]

    def list_wsl_distros(self) -> List[str]:
        """列出运行中的 WSL 发行版 (跳过 Docker Desktop 内部发行版)"""
        if self.runner.which("wsl.exe") is None:
            logger.info("未找到 wsl.exe, 没有可探测的 WSL 发行版")
            return []

        result = self.runner.run(["wsl.exe", "-l", "-q", "--running"], timeout=20)
        if not result["success"]:
            logger.warning(f"无法列出 WSL 发行版: {result.get('error')}")
            return []

        # wsl.exe 输出 UTF-16, 按本地编码解码后残留 NUL 字符
        text = str(result["data"]).replace("\x00", "").replace("\ufeff", "")
        distros = []
        for line in text.splitlines():
            name = line.strip()
            if not name or name.lower().startswith(WSL_SKIPPED_PREFIXES):
                continue
            distros.append(name)
        return distros

    # === 集群 ===

    def detect_kubernetes(self) -> bool:
        """当前节点是否属于 K8s 集群"""
        for marker in K8S_MARKER_FILES:
            if self.runner.path_exists(marker):
                logger.debug(f"发现 K8s 标志文件: {marker}")
                return True

        if self.runner.run(["pgrep", "-f", "kubelet"], timeout=10)["success"]:
            logger.debug("发现运行中的 kubelet 进程")
            return True

        if self.runner.which("kubectl") is not None:
            return KubectlWrapper(runner=self.runner).get_nodes()["success"]

        return False

    def probe_cluster(self, manifest_available: bool = False) -> List[Target]:
        """
        探测集群目标

        Args:
            manifest_available: 是否存在 generate 生成的清单 (无 Helm 3 时使用)

        Returns:
            单个集群目标 (helm 或 manifest)

        Raises:
            InstallerError: 非集群节点 (2), kubectl 不可用 (30),
                集群不可达 (36), 无 Helm 3 且无清单 (31)
        """
        if not self.detect_kubernetes():
            raise InstallerError(
                "未检测到 Kubernetes 环境",
                code=InstallerErrorCode.NO_RUNTIME,
            )

        kubectl = KubectlWrapper(runner=self.runner)
        if not kubectl.available():
            raise InstallerError(
                "未找到 kubectl, 请确认已安装",
                code=InstallerErrorCode.KUBECTL_UNAVAILABLE,
            )

        nodes = kubectl.get_nodes()
        if not nodes["success"]:
            raise InstallerError(
                "kubectl 无法连接集群, 请检查 kubeconfig",
                code=InstallerErrorCode.CLUSTER_UNREACHABLE,
                details={"stderr": nodes.get("error")},
            )

        helm = HelmWrapper(runner=self.runner)
        version = helm.major_version() if helm.available() else None
        if version == 3:
            target = Target(context=CLUSTER_CONTEXT, runtime=RuntimeKind.HELM)
        elif manifest_available:
            logger.info("Helm 3 不可用, 使用已生成的清单")
            target = Target(context=CLUSTER_CONTEXT, runtime=RuntimeKind.MANIFEST)
        else:
            raise InstallerError(
                f"需要 Helm 3 (当前: {version if version else '未安装'})",
                code=InstallerErrorCode.HELM_UNAVAILABLE,
            )

        logger.info(f"检测到集群目标 {target.name}")
        return [target]
