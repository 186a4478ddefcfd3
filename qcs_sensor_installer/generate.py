"""
清单生成 (generate 模式)

用 `helm template` 渲染 chart, 校验后写入清单文件;
之后在没有 Helm 的节点上运行集群安装时, 直接用 kubectl 应用该清单。
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import yaml

from .collectors.k8s_client import HelmWrapper
from .config import ClusterInstallConfig, InstallerSettings
from .utils.errors import InstallerError, InstallerErrorCode

logger = logging.getLogger(__name__)

MANIFEST_HEADER = "# Generated by qcs-sensor-install-k8s generate from helm template"


def render_manifest(helm: HelmWrapper, config: ClusterInstallConfig,
                    settings: InstallerSettings) -> str:
    """
    渲染 chart 为清单文本并校验

    Raises:
        InstallerError: Helm 3 不可用 (31), 渲染失败 (35), 结果不是有效 YAML (34)
    """
    if not helm.available() or helm.major_version() != 3:
        raise InstallerError(
            "生成清单需要 Helm 3",
            code=InstallerErrorCode.HELM_UNAVAILABLE,
        )

    result = helm.template(
        settings.helm_release, settings.helm_chart, config.chart_args, settings.helm_namespace
    )
    if not result["success"]:
        raise InstallerError(
            f"helm template 失败: {result.get('error')}",
            code=InstallerErrorCode.CHART_FAILED,
        )

    content = str(result["data"])
    try:
        documents = [doc for doc in yaml.safe_load_all(content) if doc]
    except yaml.YAMLError as e:
        raise InstallerError(
            f"helm template 输出不是有效的 YAML: {e}",
            code=InstallerErrorCode.MANIFEST_APPLY_FAILED,
        )

    if not documents:
        raise InstallerError(
            "helm template 没有渲染出任何资源",
            code=InstallerErrorCode.MANIFEST_APPLY_FAILED,
        )

    logger.info(f"已渲染 {len(documents)} 个资源")
    return content


def write_manifest(content: str, path: Path) -> Path:
    """写入清单文件 (带生成说明头)"""
    stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    path = Path(path).expanduser()
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(f"{MANIFEST_HEADER} at {stamp}\n{content.rstrip()}\n",
                        encoding="utf-8")
    except OSError as e:
        raise InstallerError(
            f"无法写入清单文件 {path}: {e}",
            code=InstallerErrorCode.PERMISSION_DENIED,
        )
    logger.info(f"清单已生成: {path}")
    logger.info("在没有 Helm 的节点上运行 qcs-sensor-install-k8s 时将使用该清单")
    return path


def generate_manifest(helm: HelmWrapper, config: ClusterInstallConfig,
                      settings: InstallerSettings,
                      output: Optional[Path] = None) -> Path:
    """渲染并写入清单, 返回文件路径"""
    content = render_manifest(helm, config, settings)
    return write_manifest(content, output or Path(settings.manifest_path))


def load_manifest(path: Path) -> Optional[str]:
    """读取已生成的清单, 不存在时返回 None"""
    path = Path(path).expanduser()
    if not path.is_file():
        return None
    return path.read_text(encoding="utf-8")
