"""
安装器配置

调用参数在启动时解析为不可变的 pydantic 模型, 显式传入 Orchestrator;
可调参数 (超时, 重试, 名称) 来自 QCS_ 前缀的环境变量, CLI 启动时通过 dotenv 加载 .env。
"""

import os
import re
import shlex
from pathlib import Path
from typing import List, Mapping, Optional
from urllib.parse import urlsplit, urlunsplit

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .collectors.models import SourceKind
from .utils.errors import ConfigError, InstallerErrorCode

REGISTRY_SENTINEL = "dockerhub"
NONE_SENTINEL = "none"
ARCHIVE_FILE_NAME = "QualysContainerSensor.tar.xz"
ENV_PREFIX = "QCS_"


def parse_bool(value: str, field: str) -> bool:
    """解析 true/false (不区分大小写), 其他值为调用参数错误"""
    normalized = (value or "").strip().lower()
    if normalized == "true":
        return True
    if normalized == "false":
        return False
    raise ConfigError(
        f"{field} 的取值无效, 只允许 true 或 false (不区分大小写)",
        field=field,
        value=value,
        code=InstallerErrorCode.INVALID_INPUT,
    )


def parse_optional(value: Optional[str]) -> Optional[str]:
    """NONE (不区分大小写) 或空字符串视为未提供"""
    if value is None:
        return None
    stripped = value.strip()
    if not stripped or stripped.lower() == NONE_SENTINEL:
        return None
    return stripped


def parse_options(value: Optional[str]) -> List[str]:
    """按 shell 规则拆分附加选项, NONE 表示无"""
    value = parse_optional(value)
    if value is None:
        return []
    try:
        return shlex.split(value)
    except ValueError as e:
        raise ConfigError(
            f"无法解析附加选项: {e}",
            field="install_options",
            value=value,
            code=InstallerErrorCode.INVALID_INPUT,
        )


def _first_error(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg')}" if location else first.get("msg", str(error))


class HostInstallConfig(BaseModel):
    """主机安装参数

    Attributes:
        location: 压缩包位置, 或 dockerhub 表示从镜像仓库安装
        activation_id: 激活 ID
        customer_id: 客户 ID
        pod_url: 平台 POD 地址 (镜像仓库来源必需)
        install_options: 原样传给安装脚本/容器的附加选项
        force_reinstall: 是否强制重装
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    location: str
    activation_id: str
    customer_id: str
    pod_url: Optional[str] = None
    install_options: List[str] = Field(default_factory=list)
    force_reinstall: bool = False

    @field_validator("location", "activation_id", "customer_id")
    @classmethod
    def validate_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must not be empty")
        return v.strip()

    @property
    def source_kind(self) -> SourceKind:
        if self.location.lower() == REGISTRY_SENTINEL:
            return SourceKind.REGISTRY
        return SourceKind.ARCHIVE

    @property
    def archive_location(self) -> str:
        """压缩包的完整位置

        路径不以 .tar.xz 结尾时视为目录, 追加 QualysContainerSensor.tar.xz;
        查询参数 (签名 URL) 保持不变
        """
        parts = urlsplit(self.location)
        if parts.scheme not in ("", "file") and len(parts.scheme) > 1:
            path = parts.path
            if not path.endswith(".tar.xz"):
                path = path.rstrip("/") + "/" + ARCHIVE_FILE_NAME
            return urlunsplit(parts._replace(path=path))

        if self.location.endswith(".tar.xz"):
            return self.location
        return self.location.rstrip("/\\") + "/" + ARCHIVE_FILE_NAME

    @classmethod
    def from_positional(
        cls,
        location: str,
        activation_id: str,
        customer_id: str,
        pod_url: Optional[str],
        install_options: Optional[str],
        force_reinstall: str,
    ) -> "HostInstallConfig":
        """
        从位置参数构建配置

        Raises:
            ConfigError: 参数缺失或无效 (1), 镜像仓库来源缺少 POD URL (8)
        """
        force = parse_bool(force_reinstall, "force_reinstall")
        try:
            config = cls(
                location=location or "",
                activation_id=activation_id or "",
                customer_id=customer_id or "",
                pod_url=parse_optional(pod_url),
                install_options=parse_options(install_options),
                force_reinstall=force,
            )
        except ValidationError as e:
            raise ConfigError(
                f"调用参数无效: {_first_error(e)}",
                code=InstallerErrorCode.INVALID_INPUT,
            )

        if config.source_kind is SourceKind.REGISTRY and not config.pod_url:
            raise ConfigError(
                "从 dockerhub 安装时必须提供 POD_URL",
                field="pod_url",
            )
        return config


class ClusterInstallConfig(BaseModel):
    """集群安装参数

    Attributes:
        chart_args: 原样传给 helm 的 chart 参数
        force_reinstall: 是否强制重装
        generate: 是否只生成清单
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    chart_args: List[str] = Field(default_factory=list)
    force_reinstall: bool = False
    generate: bool = False

    @classmethod
    def from_positional(
        cls,
        chart_args: Optional[str],
        force_reinstall: Optional[str] = None,
        mode: Optional[str] = None,
    ) -> "ClusterInstallConfig":
        """
        从位置参数构建配置

        force_reinstall 省略时为 false; 第三个参数只接受 generate
        """
        if mode is not None and mode.strip().lower() != "generate":
            raise ConfigError(
                f"未知的模式: {mode}",
                field="mode",
                value=mode,
                code=InstallerErrorCode.INVALID_INPUT,
            )

        force = False if force_reinstall is None else parse_bool(force_reinstall, "force_reinstall")
        args = parse_options(chart_args)
        return cls(chart_args=args, force_reinstall=force, generate=mode is not None)


class InstallerSettings(BaseModel):
    """可调参数, 来自 QCS_ 前缀的环境变量"""

    model_config = ConfigDict(frozen=True, extra="ignore")

    # 部署后校验
    verify_timeout: float = Field(default=30, ge=0)
    verify_interval: float = Field(default=1, gt=0)

    # 下载
    fetch_attempts: int = Field(default=3, ge=1)
    fetch_backoff: float = Field(default=2, ge=0)

    # 集群锁
    lock_attempts: int = Field(default=3, ge=1)
    lock_retry_delay: float = Field(default=5, ge=0)
    lock_stale_seconds: int = Field(default=900, gt=0)
    lock_name: str = "qualys-helm-install-lock"
    lock_namespace: str = "kube-system"
    janitor_name: str = "clear-stale-qualys-lock"
    janitor_schedule: str = "*/15 * * * *"

    # Helm / 清单
    helm_release: str = "qualys-tc"
    helm_chart: str = "qualys-helm-chart/qualys-tc"
    helm_namespace: str = "qualys"
    helm_timeout: str = "10m"
    manifest_path: str = "qcs-sensor-manifest.yaml"

    # 主机
    work_dir: str = "~/qualys_container_sensor_installer"
    storage_dir: str = "/usr/local/qualys/sensor/data"
    container_name: str = "qualys-container-sensor"
    image: str = "qualys/qcs-sensor:latest"
    hub_tag_url: str = "https://hub.docker.com/v2/repositories/qualys/qcs-sensor/tags/latest"

    max_workers: int = Field(default=1, ge=1)
    command_timeout: int = Field(default=120, gt=0)
    log_level: str = "INFO"

    @field_validator("helm_timeout")
    @classmethod
    def validate_helm_timeout(cls, v: str) -> str:
        if not re.fullmatch(r"(\d+[hms])+", v):
            raise ValueError("must be a duration such as 10m or 90s")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level {v}")
        return level

    @property
    def work_path(self) -> Path:
        return Path(self.work_dir).expanduser()

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "InstallerSettings":
        """
        从环境变量读取

        Raises:
            ConfigError: 取值无效 (8)
        """
        environ = os.environ if environ is None else environ
        values = {}
        for name in cls.model_fields:
            key = f"{ENV_PREFIX}{name.upper()}"
            if key in environ and environ[key] != "":
                values[name] = environ[key]

        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigError(f"环境变量配置无效: {_first_error(e)}")
