"""
安装器错误类型定义

提供结构化的错误处理机制, 错误码即进程退出码
"""

from enum import Enum
from typing import Dict, Any, Optional


class InstallerErrorCode(Enum):
    """安装器错误码枚举 (值即退出码)"""

    # 通用结果
    SUCCESS = 0
    INVALID_INPUT = 1
    NO_RUNTIME = 2
    RUNTIME_UNREACHABLE = 3
    NETWORK_ERROR = 4
    DEPLOYMENT_FAILED = 5
    PARTIAL_SUCCESS = 6
    NO_ACTION = 7
    CONFIG_ERROR = 8

    # 主机 tar.xz 安装路径 (10-19)
    EXTRACT_FAILED = 10
    DOWNLOAD_FAILED = 11
    INSTALLER_FAILED = 12
    PERMISSION_DENIED = 13
    STORAGE_DIR_FAILED = 14

    # 主机操作系统相关 (20-29)
    INCOMPATIBLE_PLATFORM = 20
    WSL_UNAVAILABLE = 21
    SOCKET_UNAVAILABLE = 22
    TARGET_TRACKING = 23
    PULL_FAILED = 24
    LAUNCH_FAILED = 25
    VERIFICATION_FAILED = 26

    # 集群相关 (30-39)
    KUBECTL_UNAVAILABLE = 30
    HELM_UNAVAILABLE = 31
    LOCK_TIMEOUT = 32
    NAMESPACE_ERROR = 33
    MANIFEST_APPLY_FAILED = 34
    CHART_FAILED = 35
    CLUSTER_UNREACHABLE = 36

    @property
    def exit_code(self) -> int:
        return self.value


# 退出码说明 (摘要最后一行使用)
EXIT_CODE_DESCRIPTIONS: Dict[InstallerErrorCode, str] = {
    InstallerErrorCode.SUCCESS: "full success",
    InstallerErrorCode.INVALID_INPUT: "invalid invocation",
    InstallerErrorCode.NO_RUNTIME: "no reachable runtime / missing system dependency",
    InstallerErrorCode.RUNTIME_UNREACHABLE: "runtime communication error",
    InstallerErrorCode.NETWORK_ERROR: "network/fetch error",
    InstallerErrorCode.DEPLOYMENT_FAILED: "installer/deployment execution error",
    InstallerErrorCode.PARTIAL_SUCCESS: "partial success across multiple targets",
    InstallerErrorCode.NO_ACTION: "no action needed",
    InstallerErrorCode.CONFIG_ERROR: "configuration error",
    InstallerErrorCode.EXTRACT_FAILED: "archive extraction failed",
    InstallerErrorCode.DOWNLOAD_FAILED: "archive download failed",
    InstallerErrorCode.INSTALLER_FAILED: "installer script failed",
    InstallerErrorCode.PERMISSION_DENIED: "permission denied",
    InstallerErrorCode.STORAGE_DIR_FAILED: "storage directory could not be created",
    InstallerErrorCode.INCOMPATIBLE_PLATFORM: "incompatible platform",
    InstallerErrorCode.WSL_UNAVAILABLE: "virtualization layer unavailable",
    InstallerErrorCode.SOCKET_UNAVAILABLE: "runtime socket unavailable",
    InstallerErrorCode.TARGET_TRACKING: "multi-target tracking error",
    InstallerErrorCode.PULL_FAILED: "image pull failed",
    InstallerErrorCode.LAUNCH_FAILED: "container launch failed",
    InstallerErrorCode.VERIFICATION_FAILED: "sensor did not reach running state",
    InstallerErrorCode.KUBECTL_UNAVAILABLE: "kubectl unavailable",
    InstallerErrorCode.HELM_UNAVAILABLE: "helm 3 unavailable",
    InstallerErrorCode.LOCK_TIMEOUT: "cluster lock timeout",
    InstallerErrorCode.NAMESPACE_ERROR: "namespace error",
    InstallerErrorCode.MANIFEST_APPLY_FAILED: "manifest apply failed",
    InstallerErrorCode.CHART_FAILED: "helm chart operation failed",
    InstallerErrorCode.CLUSTER_UNREACHABLE: "cluster unreachable",
}


def describe_exit_code(code: int) -> str:
    """返回退出码的说明文字"""
    try:
        return EXIT_CODE_DESCRIPTIONS[InstallerErrorCode(code)]
    except (ValueError, KeyError):
        return "unknown"


class InstallerError(Exception):
    """安装器异常基类

    提供结构化的错误信息,便于日志记录和错误处理

    Attributes:
        message: 错误消息
        code: 错误码 (决定退出码)
        details: 额外的错误详情
    """

    def __init__(
        self,
        message: str,
        code: InstallerErrorCode = InstallerErrorCode.DEPLOYMENT_FAILED,
        details: Optional[Dict[str, Any]] = None
    ):
        """初始化安装器错误

        Args:
            message: 错误描述信息
            code: 错误码
            details: 额外的错误详情 (如命令、目标等)
        """
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    @property
    def exit_code(self) -> int:
        return self.code.value

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典格式

        Returns:
            包含完整错误信息的字典
        """
        return {
            "error": self.message,
            "code": self.code.name,
            "exit_code": self.code.value,
            "details": self.details
        }

    def __str__(self) -> str:
        """友好的字符串表示"""
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"[{self.code.name}] {self.message} ({details_str})"
        return f"[{self.code.name}] {self.message}"


class DeployError(InstallerError):
    """单个目标部署失败

    在 Orchestrator 边界被捕获并记录为 Failed 结果, 不会中断其他目标
    """

    def __init__(
        self,
        message: str,
        code: InstallerErrorCode = InstallerErrorCode.DEPLOYMENT_FAILED,
        target: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        """初始化部署错误

        Args:
            message: 错误描述
            code: 错误码 (FetchFailed/ExtractFailed/... 对应的退出码)
            target: 目标名称 (如 native/docker)
            details: 额外详情
        """
        all_details = details or {}
        if target:
            all_details["target"] = target

        super().__init__(message, code, all_details)


class ConfigError(InstallerError):
    """配置错误

    用于参数或环境变量校验失败
    """

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        code: InstallerErrorCode = InstallerErrorCode.CONFIG_ERROR,
    ):
        """初始化配置错误

        Args:
            message: 错误描述
            field: 出错的字段名
            value: 错误的值
            code: 错误码 (参数错误用 INVALID_INPUT, 其余 CONFIG_ERROR)
        """
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)

        super().__init__(message, code, details)


class CommandError(InstallerError):
    """外部命令执行失败 (docker/podman/kubectl/helm/wsl)"""

    def __init__(
        self,
        message: str,
        cmd: Optional[str] = None,
        stderr: Optional[str] = None,
        code: InstallerErrorCode = InstallerErrorCode.RUNTIME_UNREACHABLE,
    ):
        details = {}
        if cmd:
            details["cmd"] = cmd
        if stderr:
            details["stderr"] = stderr

        super().__init__(message, code, details)
