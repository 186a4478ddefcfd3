"""
容器运行时客户端 - 基于 docker / podman CLI

RuntimeClient 是部署逻辑依赖的窄接口 (inspect/list/stop/remove/pull/run),
CliRuntimeClient 是真实实现, 测试中使用内存假实现替换。
WSL 上下文中的命令统一通过 `wsl.exe -d <distro> --` 转发。
"""

import logging
import os
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from ..utils.errors import DeployError, InstallerErrorCode
from ..utils.shell import CommandRunner
from .models import RuntimeKind, Target

logger = logging.getLogger(__name__)

DOCKER_SOCKET = "/var/run/docker.sock"
PODMAN_DEFAULT_SOCKET = "/run/podman/podman.sock"


class RuntimeClient(ABC):
    """容器运行时能力接口"""

    kind: RuntimeKind

    @abstractmethod
    def info(self) -> bool:
        """运行时是否可达 (不仅是已安装)"""

    @abstractmethod
    def inspect(self, name: str) -> Optional[Dict]:
        """返回容器详情, 不存在时返回 None"""

    @abstractmethod
    def list(self, name: str) -> List[str]:
        """按名称过滤列出容器 ID (包含已停止的)"""

    @abstractmethod
    def stop(self, name: str) -> None:
        """停止容器, 已停止视为成功"""

    @abstractmethod
    def remove(self, name: str) -> None:
        """删除容器, 不存在视为成功"""

    @abstractmethod
    def pull(self, image: str) -> None:
        """拉取镜像, 失败抛出 DeployError(PULL_FAILED)"""

    @abstractmethod
    def run(self, args: List[str]) -> str:
        """创建并启动容器, 返回容器 ID, 失败抛出 DeployError(LAUNCH_FAILED)"""

    @abstractmethod
    def logs(self, name: str, tail: int = 50) -> str:
        """容器最近日志 (失败返回空字符串)"""

    @abstractmethod
    def image_identity(self, name: str) -> Optional[str]:
        """容器所用镜像的标识: repo digest 优先, 否则镜像 ID"""

    @abstractmethod
    def socket_path(self) -> str:
        """需要挂载进传感器容器的运行时 socket 路径"""

    @abstractmethod
    def socket_exists(self, path: str) -> bool:
        """socket 是否存在于执行上下文中"""

    @abstractmethod
    def execute(self, cmd: List[str], timeout: Optional[int] = None) -> Dict:
        """在执行上下文中执行任意命令 (安装脚本, 创建目录)"""

    @abstractmethod
    def context_path(self, path: str) -> str:
        """把本机路径转换为执行上下文中可见的路径"""

    def is_running(self, name: str) -> bool:
        """容器是否处于运行状态"""
        details = self.inspect(name)
        if not details:
            return False
        return bool(details.get("State", {}).get("Running"))


class CliRuntimeClient(RuntimeClient):
    """docker / podman CLI 封装

    Args:
        target: 目标 (决定运行时和执行上下文)
        runner: 命令执行器
        use_sudo: 是否在运行时命令前加 sudo (非 root 的 POSIX 主机)
    """

    def __init__(
        self,
        target: Target,
        runner: Optional[CommandRunner] = None,
        use_sudo: Optional[bool] = None,
    ):
        if target.runtime not in (RuntimeKind.DOCKER, RuntimeKind.PODMAN):
            raise ValueError(f"不是容器运行时目标: {target.name}")

        self.target = target
        self.kind = target.runtime
        self.runner = runner or CommandRunner()
        if use_sudo is None:
            use_sudo = needs_sudo() and target.wsl_distro is None
        self.use_sudo = use_sudo
        self.prefix = self._build_prefix()
        self.runtime_cmd = self.prefix + [self.kind.value]

    def _build_prefix(self) -> List[str]:
        """构建执行上下文前缀"""
        prefix = []
        distro = self.target.wsl_distro
        if distro:
            prefix.extend(["wsl.exe", "-d", distro, "--"])
        if self.use_sudo:
            prefix.append("sudo")
        return prefix

    def _runtime(self, *args: str, timeout: Optional[int] = None,
                 parse_json: bool = False) -> Dict:
        return self.runner.run(
            self.runtime_cmd + list(args), timeout=timeout, parse_json=parse_json
        )

    # === 查询 ===

    def info(self) -> bool:
        result = self._runtime("info", timeout=20)
        if not result["success"]:
            logger.debug(f"{self.target.name} 不可达: {result.get('error')}")
        return result["success"]

    def inspect(self, name: str) -> Optional[Dict]:
        result = self._runtime("inspect", name, parse_json=True)
        if not result["success"]:
            return None

        data = result["data"]
        if isinstance(data, list):
            return data[0] if data else None
        return data if isinstance(data, dict) else None

    def list(self, name: str) -> List[str]:
        result = self._runtime(
            "ps", "-a", "--filter", f"name=^{name}$", "--format", "{{.ID}}"
        )
        if not result["success"]:
            raise DeployError(
                f"无法列出容器: {result.get('error')}",
                code=InstallerErrorCode.RUNTIME_UNREACHABLE,
                target=self.target.name,
            )
        return [line for line in result["data"].splitlines() if line.strip()]

    def logs(self, name: str, tail: int = 50) -> str:
        result = self._runtime("logs", "--tail", str(tail), name)
        if not result["success"]:
            return ""
        return result["data"]

    def image_identity(self, name: str) -> Optional[str]:
        details = self.inspect(name)
        if not details:
            return None

        image_id = details.get("Image")
        if not image_id:
            return None

        result = self._runtime("image", "inspect", image_id, parse_json=True)
        if result["success"]:
            data = result["data"]
            image = data[0] if isinstance(data, list) and data else data
            if isinstance(image, dict):
                for repo_digest in image.get("RepoDigests") or []:
                    # qualys/qcs-sensor@sha256:...
                    if "@" in repo_digest:
                        return repo_digest.split("@", 1)[1]

        return image_id

    # === 变更 ===

    def stop(self, name: str) -> None:
        result = self._runtime("stop", name)
        if not result["success"]:
            # 已停止/不存在不算错误
            logger.debug(f"停止 {name} 未成功 (忽略): {result.get('error')}")

    def remove(self, name: str) -> None:
        result = self._runtime("rm", "-f", name)
        if result["success"]:
            return

        error = (result.get("error") or "").lower()
        if "no such container" in error or "no container with name" in error:
            return

        raise DeployError(
            f"无法删除容器 {name}: {result.get('error')}",
            code=InstallerErrorCode.RUNTIME_UNREACHABLE,
            target=self.target.name,
        )

    def pull(self, image: str) -> None:
        result = self._runtime("pull", image, timeout=600)
        if not result["success"]:
            raise DeployError(
                f"镜像拉取失败: {image}",
                code=InstallerErrorCode.PULL_FAILED,
                target=self.target.name,
                details={"stderr": result.get("error")},
            )

    def run(self, args: List[str]) -> str:
        result = self._runtime("run", *args)
        if not result["success"]:
            raise DeployError(
                "容器启动失败",
                code=InstallerErrorCode.LAUNCH_FAILED,
                target=self.target.name,
                details={"stderr": result.get("error")},
            )
        return result["data"]

    # === socket 与执行上下文 ===

    def socket_path(self) -> str:
        if self.kind is RuntimeKind.DOCKER:
            return DOCKER_SOCKET

        result = self._runtime(
            "info", "--format", "{{.Host.RemoteSocket.Path}}", timeout=20
        )
        if result["success"] and result["data"]:
            path = result["data"].strip()
            if path.startswith("unix://"):
                path = path[len("unix://"):]
            return path
        return PODMAN_DEFAULT_SOCKET

    def socket_exists(self, path: str) -> bool:
        if not self.target.wsl_distro:
            return self.runner.path_exists(path)
        return self.execute(["test", "-S", path])["success"]

    def execute(self, cmd: List[str], timeout: Optional[int] = None) -> Dict:
        return self.runner.run(self.prefix + cmd, timeout=timeout)

    def context_path(self, path: str) -> str:
        if not self.target.wsl_distro:
            return path

        result = self.runner.run(
            ["wsl.exe", "-d", self.target.wsl_distro, "--", "wslpath", "-a", path]
        )
        if not result["success"] or not result["data"]:
            raise DeployError(
                f"无法转换路径到 WSL: {path}",
                code=InstallerErrorCode.WSL_UNAVAILABLE,
                target=self.target.name,
            )
        return result["data"].strip()


def needs_sudo() -> bool:
    """POSIX 主机上非 root 用户需要 sudo"""
    geteuid = getattr(os, "geteuid", None)
    return geteuid is not None and geteuid() != 0
