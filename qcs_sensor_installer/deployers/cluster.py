"""
集群部署器 - Helm chart 或预生成的清单

Helm 3 可用时使用 `helm upgrade --install` (不存在则安装, 存在则升级);
只有 kubectl 时应用 generate 模式生成的清单, 强制重装时先删除再应用。
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional

from ..collectors.k8s_client import HelmWrapper, KubectlWrapper
from ..collectors.models import (
    InstallAction,
    InstallPlan,
    RuntimeKind,
    SensorInstance,
    SourceKind,
    Target,
)
from ..config import ClusterInstallConfig, InstallerSettings
from ..utils.errors import DeployError, InstallerErrorCode
from .base import BaseDeployer

logger = logging.getLogger(__name__)


class ClusterDeployer(BaseDeployer):
    """集群目标的部署器

    Args:
        target: 集群目标 (helm 或 manifest)
        config: 集群安装参数
        settings: 可调参数
        kubectl: kubectl 封装
        helm: helm 封装
        manifest: 清单内容 (manifest 目标必需)
        sleep: 等待函数
    """

    def __init__(
        self,
        target: Target,
        config: ClusterInstallConfig,
        settings: InstallerSettings,
        kubectl: KubectlWrapper,
        helm: Optional[HelmWrapper] = None,
        manifest: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        super().__init__(
            target,
            verify_timeout=settings.verify_timeout,
            verify_interval=settings.verify_interval,
            sleep=sleep,
        )
        if target.runtime is RuntimeKind.MANIFEST and not manifest:
            raise DeployError(
                "清单模式需要先通过 generate 生成清单",
                code=InstallerErrorCode.HELM_UNAVAILABLE,
                target=target.name,
            )

        self.config = config
        self.settings = settings
        self.kubectl = kubectl
        self.helm = helm
        self.manifest = manifest
        self.release = settings.helm_release
        self.namespace = settings.helm_namespace

    @property
    def uses_helm(self) -> bool:
        return self.target.runtime is RuntimeKind.HELM

    # === 状态 ===

    def sensor_pods(self) -> List[Dict]:
        """传感器 Pod 列表 (命名空间不存在时为空)"""
        result = self.kubectl.get_pods(self.namespace, selector=f"release={self.release}")
        if not result["success"]:
            if "not found" in (result.get("error") or "").lower():
                return []
            raise DeployError(
                f"无法查询传感器 Pod: {result.get('error')}",
                code=InstallerErrorCode.CLUSTER_UNREACHABLE,
                target=self.target.name,
            )
        data = result.get("data")
        return data.get("items", []) if isinstance(data, dict) else []

    def release_exists(self) -> bool:
        result = self.helm.list_release(self.release, self.namespace)
        if not result["success"]:
            raise DeployError(
                f"无法查询 Helm release: {result.get('error')}",
                code=InstallerErrorCode.CHART_FAILED,
                target=self.target.name,
            )
        return isinstance(result["data"], list) and len(result["data"]) > 0

    def query_instance(self) -> SensorInstance:
        pods = self.sensor_pods()
        exists = bool(pods)
        if self.uses_helm:
            exists = self.release_exists() or exists

        running = _all_running(pods)
        instance = SensorInstance(
            exists=exists,
            running=running,
            image_identity=_pod_image_identity(pods) if running else None,
            source_kind=SourceKind.REGISTRY,
        )
        logger.info(f"[{self.target.name}] 现有部署: exists={exists} running={running} "
                    f"pods={len(pods)}")
        return instance

    def is_running(self) -> bool:
        return _all_running(self.sensor_pods())

    def diagnostics(self) -> Dict[str, Any]:
        phases = {
            pod.get("metadata", {}).get("name", "?"): pod.get("status", {}).get("phase", "?")
            for pod in self.sensor_pods()
        }
        return {"pods": phases} if phases else {}

    # === 部署 ===

    def teardown(self, instance: SensorInstance, plan: InstallPlan) -> None:
        if self.uses_helm:
            self._helm_uninstall()
        elif plan.action is InstallAction.FORCE_REINSTALL:
            self._manifest_delete()

    def install(self, plan: InstallPlan) -> None:
        if self.uses_helm:
            self._helm_upgrade_install(plan)
        else:
            self._manifest_apply()

    def _helm_uninstall(self) -> None:
        logger.info(f"[{self.target.name}] 卸载 release {self.release}...")
        result = self.helm.uninstall(self.release, self.namespace,
                                     timeout=self.settings.helm_timeout)
        if result["success"]:
            return
        if "not found" in (result.get("error") or "").lower():
            logger.info(f"[{self.target.name}] release 不存在, 无需卸载")
            return
        raise DeployError(
            f"Helm 卸载失败: {result.get('error')}",
            code=InstallerErrorCode.CHART_FAILED,
            target=self.target.name,
        )

    def _helm_upgrade_install(self, plan: InstallPlan) -> None:
        update = self.helm.repo_update()
        if not update["success"]:
            logger.warning(f"helm repo update 失败 (忽略): {update.get('error')}")

        logger.info(f"[{self.target.name}] 执行 '{plan.action.value}': "
                    f"helm upgrade --install {self.release} {self.settings.helm_chart}")
        result = self.helm.upgrade_install(
            self.release,
            self.settings.helm_chart,
            self.config.chart_args,
            self.namespace,
            timeout=self.settings.helm_timeout,
        )
        if not result["success"]:
            error = result.get("error") or ""
            code = InstallerErrorCode.CHART_FAILED
            if "namespace" in error.lower() and "forbidden" in error.lower():
                code = InstallerErrorCode.NAMESPACE_ERROR
            raise DeployError(
                "Helm chart 安装/升级失败",
                code=code,
                target=self.target.name,
                details={"stderr": error},
            )
        logger.info(f"[{self.target.name}] Helm chart 已部署")

    def _manifest_delete(self) -> None:
        logger.info(f"[{self.target.name}] 删除现有清单资源...")
        result = self.kubectl.delete_manifest(self.manifest)
        if not result["success"]:
            raise DeployError(
                "删除清单资源失败",
                code=InstallerErrorCode.MANIFEST_APPLY_FAILED,
                target=self.target.name,
                details={"stderr": result.get("error")},
            )

    def _manifest_apply(self) -> None:
        logger.info(f"[{self.target.name}] 应用清单...")
        result = self.kubectl.apply(self.manifest)
        if not result["success"]:
            raise DeployError(
                "应用清单失败",
                code=InstallerErrorCode.MANIFEST_APPLY_FAILED,
                target=self.target.name,
                details={"stderr": result.get("error")},
            )


def _all_running(pods: List[Dict]) -> bool:
    return bool(pods) and all(
        pod.get("status", {}).get("phase") == "Running" for pod in pods
    )


def _pod_image_identity(pods: List[Dict]) -> Optional[str]:
    """第一个 Pod 第一个容器的镜像 digest (imageID 中 @ 之后的部分)"""
    for pod in pods:
        for status in pod.get("status", {}).get("containerStatuses") or []:
            image_id = status.get("imageID") or ""
            if "@" in image_id:
                return image_id.split("@", 1)[1]
            if image_id:
                return image_id
    return None
