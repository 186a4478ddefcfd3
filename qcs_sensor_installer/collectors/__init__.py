"""
收集器模块 - 运行时/集群状态探测

提供目标探测, 运行时与 K8s 客户端, 以及版本检查
"""

from .k8s_client import KubectlWrapper, HelmWrapper
from .models import (
    RuntimeKind,
    SourceKind,
    InstallAction,
    DeploymentStatus,
    Target,
    SensorInstance,
    InstallPlan,
    DeploymentResult,
)
from .probe import RuntimeProbe
from .runtime_client import RuntimeClient, CliRuntimeClient
from .version_oracle import VersionOracle

__all__ = [
    # 客户端
    "KubectlWrapper",
    "HelmWrapper",
    "RuntimeClient",
    "CliRuntimeClient",
    # 探测
    "RuntimeProbe",
    "VersionOracle",
    # 模型
    "RuntimeKind",
    "SourceKind",
    "InstallAction",
    "DeploymentStatus",
    "Target",
    "SensorInstance",
    "InstallPlan",
    "DeploymentResult",
]
