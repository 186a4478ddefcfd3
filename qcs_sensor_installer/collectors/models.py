"""
安装器数据模型定义

枚举 + 不可变 dataclass; 目标在探测阶段创建, 之后只读
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from ..utils.errors import InstallerErrorCode


class RuntimeKind(str, Enum):
    """运行时类型枚举"""
    DOCKER = "docker"
    PODMAN = "podman"
    HELM = "helm"
    # 只有 kubectl 可用时, 使用 generate 生成的清单
    MANIFEST = "manifest"


class SourceKind(str, Enum):
    """安装来源枚举"""
    ARCHIVE = "archive"
    REGISTRY = "registry"


class InstallAction(str, Enum):
    """安装决策结果"""
    INSTALL = "Install"
    UPGRADE = "Upgrade"
    FORCE_REINSTALL = "ForceReinstall"
    SKIP = "Skip"


class DeploymentStatus(str, Enum):
    """单个目标的部署结果状态"""
    SUCCESS = "Success"
    FAILED = "Failed"
    SKIPPED = "Skipped"


# 执行上下文
NATIVE_CONTEXT = "native"
CLUSTER_CONTEXT = "cluster"
WSL_CONTEXT_PREFIX = "wsl:"

CLUSTER_RUNTIMES = (RuntimeKind.HELM, RuntimeKind.MANIFEST)


@dataclass(frozen=True)
class Target:
    """一个可部署目标: (执行上下文, 运行时)

    Attributes:
        context: native | wsl:<distro> | cluster
        runtime: 运行时类型
        reachable: 探测时运行时是否可达
    """
    context: str
    runtime: RuntimeKind
    reachable: bool = True

    @property
    def name(self) -> str:
        return f"{self.context}/{self.runtime.value}"

    @property
    def is_cluster(self) -> bool:
        return self.runtime in CLUSTER_RUNTIMES

    @property
    def wsl_distro(self) -> Optional[str]:
        """WSL 发行版名称, 非 WSL 上下文返回 None"""
        if self.context.startswith(WSL_CONTEXT_PREFIX):
            return self.context[len(WSL_CONTEXT_PREFIX):]
        return None

    @property
    def slug(self) -> str:
        """可用作目录名的目标标识"""
        return "".join(c if c.isalnum() or c in "-_." else "_" for c in self.name)


@dataclass(frozen=True)
class SensorInstance:
    """目标上传感器的可观测状态 (每个目标处理开始时重新查询)"""
    exists: bool = False
    running: bool = False
    image_identity: Optional[str] = None
    source_kind: SourceKind = SourceKind.ARCHIVE


@dataclass(frozen=True)
class InstallPlan:
    """决策输出

    Attributes:
        action: 决策动作
        reason: 人类可读的原因
        teardown: 部署前是否需要先停止并删除现有实例
    """
    action: InstallAction
    reason: str
    teardown: bool = False

    @property
    def is_skip(self) -> bool:
        return self.action is InstallAction.SKIP


@dataclass(frozen=True)
class DeploymentResult:
    """单个目标的部署结果, 每次运行每个目标只产生一个"""
    target: Target
    status: DeploymentStatus
    message: str
    action: Optional[InstallAction] = None
    error_code: Optional[InstallerErrorCode] = None
    details: dict = field(default_factory=dict, compare=False)

    @property
    def ok(self) -> bool:
        return self.status is DeploymentStatus.SUCCESS
