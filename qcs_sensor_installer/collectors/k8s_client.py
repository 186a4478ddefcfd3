"""
Kubernetes 客户端 - 基于 kubectl 和 helm

使用策略：
1. kubectl - 标准 K8s 资源 (锁 ConfigMap, 清理 CronJob, 传感器 Pod, 清单 apply)
2. helm - Chart 安装/升级/卸载/渲染, 仅支持 Helm 3
"""

import logging
import re
from typing import Dict, List, Optional

from ..utils.shell import CommandRunner

logger = logging.getLogger(__name__)


class KubectlWrapper:
    """kubectl 封装

    所有方法返回 CommandRunner 的结果字典 {"success", "data", "error", "cmd"}
    """

    def __init__(self, context: Optional[str] = None,
                 runner: Optional[CommandRunner] = None):
        """
        Args:
            context: kubeconfig context (默认使用 current-context)
            runner: 命令执行器
        """
        self.context = context
        self.runner = runner or CommandRunner()
        self.kubectl_cmd = self._build_kubectl_cmd()

    def _build_kubectl_cmd(self) -> List[str]:
        """构建 kubectl 命令前缀"""
        cmd = ["kubectl"]
        if self.context:
            cmd.extend(["--context", self.context])
        return cmd

    def run(self, args: List[str], timeout: int = 30,
            input: Optional[str] = None, parse_json: bool = False) -> Dict:
        return self.runner.run(
            self.kubectl_cmd + args, timeout=timeout, input=input, parse_json=parse_json
        )

    def available(self) -> bool:
        """kubectl 是否在 PATH 中"""
        return self.runner.which("kubectl") is not None

    # === 集群 ===

    def get_nodes(self) -> Dict:
        """
        获取所有节点信息

        Returns:
            {"success": True/False, "data": {"items": [节点列表]}, "error": str}
        """
        return self.run(["get", "nodes", "-o", "json"], timeout=15, parse_json=True)

    # === ConfigMap (安装锁) ===

    def create_configmap(self, name: str, namespace: str,
                         literals: Dict[str, str]) -> Dict:
        """
        创建 ConfigMap

        已存在时 kubectl create 失败, 这是锁的原子 "不存在才创建" 操作

        Args:
            name: ConfigMap 名称
            namespace: 命名空间
            literals: 数据键值对
        """
        args = ["create", "configmap", name, "-n", namespace]
        for key, value in literals.items():
            args.append(f"--from-literal={key}={value}")
        return self.run(args, timeout=15)

    def get_configmap(self, name: str, namespace: str) -> Dict:
        """获取 ConfigMap (JSON)"""
        return self.run(
            ["get", "configmap", name, "-n", namespace, "-o", "json"],
            timeout=15, parse_json=True,
        )

    def delete_configmap(self, name: str, namespace: str) -> Dict:
        """删除 ConfigMap"""
        return self.run(
            ["delete", "configmap", name, "-n", namespace, "--ignore-not-found=true"],
            timeout=15,
        )

    # === CronJob (锁清理) ===

    def get_cronjob(self, name: str, namespace: str) -> Dict:
        """获取 CronJob"""
        return self.run(["get", "cronjob", name, "-n", namespace], timeout=15)

    # === 清单 ===

    def apply(self, manifest: str, namespace: Optional[str] = None,
              timeout: int = 120) -> Dict:
        """通过 stdin 应用清单 (kubectl apply -f -)"""
        args = ["apply"]
        if namespace:
            args.extend(["-n", namespace])
        args.extend(["-f", "-"])
        return self.run(args, timeout=timeout, input=manifest)

    def delete_manifest(self, manifest: str, timeout: int = 120) -> Dict:
        """删除清单中的全部资源, 不存在的资源忽略"""
        return self.run(
            ["delete", "-f", "-", "--ignore-not-found=true", "--wait=true"],
            timeout=timeout, input=manifest,
        )

    # === Pod ===

    def get_pods(self, namespace: str, selector: Optional[str] = None) -> Dict:
        """获取 Pod 列表"""
        args = ["get", "pods", "-n", namespace]
        if selector:
            args.extend(["-l", selector])
        args.extend(["-o", "json"])
        return self.run(args, timeout=15, parse_json=True)


class HelmWrapper:
    """helm 封装 (仅 Helm 3)"""

    def __init__(self, runner: Optional[CommandRunner] = None):
        self.runner = runner or CommandRunner()
        self.helm_cmd = ["helm"]

    def run(self, args: List[str], timeout: int = 30,
            parse_json: bool = False) -> Dict:
        return self.runner.run(self.helm_cmd + args, timeout=timeout, parse_json=parse_json)

    def available(self) -> bool:
        return self.runner.which("helm") is not None

    def major_version(self) -> Optional[int]:
        """
        Helm 主版本号

        Returns:
            如 3; helm 不可用或无法解析时返回 None
        """
        result = self.run(["version", "--short"], timeout=15)
        if not result["success"]:
            return None

        match = re.search(r"v(\d+)", str(result["data"]))
        if not match:
            return None
        return int(match.group(1))

    def list_release(self, release: str, namespace: str) -> Dict:
        """按名称查询 release

        Returns:
            data 为 release 列表 (JSON), 空列表表示不存在
        """
        return self.run(
            ["list", "-n", namespace, "--filter", f"^{re.escape(release)}$", "-o", "json"],
            timeout=30, parse_json=True,
        )

    def uninstall(self, release: str, namespace: str, timeout: str = "10m") -> Dict:
        """卸载 release 并等待资源删除"""
        return self.run(
            ["uninstall", release, "-n", namespace, "--wait", "--timeout", timeout],
            timeout=_seconds(timeout) + 30,
        )

    def repo_update(self) -> Dict:
        return self.run(["repo", "update"], timeout=120)

    def upgrade_install(self, release: str, chart: str, chart_args: List[str],
                        namespace: str, timeout: str = "10m") -> Dict:
        """
        安装或升级 release (helm upgrade --install)

        Args:
            release: release 名称
            chart: chart 引用 (如 qualys-helm-chart/qualys-tc)
            chart_args: 调用方提供的 chart 参数, 原样传递
            namespace: 命名空间 (不存在时创建)
            timeout: helm 等待超时 (如 10m)
        """
        args = ["upgrade", "--install", release, chart, *chart_args,
                "--namespace", namespace, "--create-namespace",
                "--wait", "--timeout", timeout]
        return self.run(args, timeout=_seconds(timeout) + 60)

    def template(self, release: str, chart: str, chart_args: List[str],
                 namespace: str) -> Dict:
        """渲染 chart 为清单文本 (helm template)"""
        args = ["template", release, chart, *chart_args, "--namespace", namespace]
        return self.run(args, timeout=120)


def _seconds(duration: str) -> int:
    """把 helm 的时长字符串 (如 10m, 90s, 1h) 转换为秒"""
    total = 0
    for value, unit in re.findall(r"(\d+)([hms])", duration):
        total += int(value) * {"h": 3600, "m": 60, "s": 1}[unit]
    return total or 600
