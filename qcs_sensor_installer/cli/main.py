#!/usr/bin/env python3
"""
Qualys 容器传感器安装器

位置参数调用 (便于远程执行平台做字段映射):
- 主机:  qcs-sensor-install <LOCATION> <ACTIVATIONID> <CUSTOMERID> <POD_URL> <INSTALL_OPTIONS> <FORCE_REINSTALL>
- 集群:  qcs-sensor-install-k8s "<CHART_ARGS>" <FORCE_REINSTALL> [generate]
- 清理:  qcs-sensor-lock-janitor
"""

import argparse
import logging
import os
import sys
import time
from typing import Callable, List, Optional

from dotenv import load_dotenv
from rich.console import Console

from qcs_sensor_installer.collectors.k8s_client import HelmWrapper, KubectlWrapper
from qcs_sensor_installer.collectors.models import DeploymentStatus, SourceKind
from qcs_sensor_installer.collectors.probe import RuntimeProbe
from qcs_sensor_installer.collectors.version_oracle import VersionOracle
from qcs_sensor_installer.config import (
    ClusterInstallConfig,
    HostInstallConfig,
    InstallerSettings,
)
from qcs_sensor_installer.deployers import create_deployer
from qcs_sensor_installer.generate import generate_manifest, load_manifest
from qcs_sensor_installer.lock import ClusterLock
from qcs_sensor_installer.orchestrator import Orchestrator, RunSummary
from qcs_sensor_installer.utils.errors import InstallerError, InstallerErrorCode
from qcs_sensor_installer.utils.shell import CommandRunner

logger = logging.getLogger("qcs_sensor_installer")

console = Console()

LOG_FORMAT = "[%(levelname)s] %(message)s"

SUMMARY_STYLES = {
    DeploymentStatus.SUCCESS: "green",
    DeploymentStatus.FAILED: "red",
    DeploymentStatus.SKIPPED: "yellow",
}


class PositionalParser(argparse.ArgumentParser):
    """参数错误抛出 InstallerError (退出码 1), 而不是直接退出"""

    def error(self, message: str):
        raise InstallerError(message, code=InstallerErrorCode.INVALID_INPUT)

    def exit(self, status: int = 0, message: Optional[str] = None):
        # 帮助信息同样使用 "调用无效/帮助" 退出码
        if message:
            self._print_message(message, sys.stderr)
        sys.exit(status or InstallerErrorCode.INVALID_INPUT.value)


def configure_logging(level: str = "INFO") -> None:
    """带级别标签的 stdout 日志 (重复调用只替换自己添加的 handler)"""
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_qcs_installer", False):
            root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._qcs_installer = True
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))


def print_summary(summary: RunSummary) -> None:
    """打印部署摘要 (运行的最后输出)"""
    statuses = {result.target.name: result.status for result in summary.results}

    console.print()
    for line in summary.render():
        style = None
        for name, status in statuses.items():
            if f" {name}: " in line:
                style = SUMMARY_STYLES[status]
                break
        console.print(line, style=style, markup=False, highlight=False, soft_wrap=True)


def _bootstrap() -> InstallerSettings:
    load_dotenv()
    configure_logging(os.getenv("QCS_LOG_LEVEL", "INFO"))
    settings = InstallerSettings.from_env()
    configure_logging(settings.log_level)
    return settings


# === 主机 ===

def build_host_parser() -> PositionalParser:
    parser = PositionalParser(
        prog="qcs-sensor-install",
        description="安装/升级 Qualys 容器传感器 (所有可达的 Docker/Podman 运行时)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
示例:
  # 从 tar.xz 安装, 无附加选项
  %(prog)s 'https://bucket.example.com/QualysContainerSensor.tar.xz?sig=...' 'activation-id' 'customer-id' NONE NONE false

  # 从 Docker Hub 安装, 启用 registry sensor
  %(prog)s dockerhub 'activation-id' 'customer-id' 'https://pod.url' '--registry-sensor' false
        """,
    )
    parser.add_argument("location", help="tar.xz 位置 (URL/路径), 或 dockerhub")
    parser.add_argument("activation_id", help="Qualys ActivationID")
    parser.add_argument("customer_id", help="Qualys CustomerID")
    parser.add_argument("pod_url", nargs="?", default="NONE",
                        help="POD URL (仅 dockerhub 需要, 否则 NONE)")
    parser.add_argument("install_options", nargs="?", default="NONE",
                        help="附加安装选项 (不需要时为 NONE)")
    parser.add_argument("force_reinstall", nargs="?", default="false",
                        help="已部署时是否强制重装 true/false")
    return parser


def run_host(
    argv: Optional[List[str]] = None,
    runner: Optional[CommandRunner] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """
    主机安装流程

    Returns:
        退出码
    """
    parser = build_host_parser()
    force = False
    try:
        settings = _bootstrap()
        args = parser.parse_args(argv)
        config = HostInstallConfig.from_positional(
            args.location, args.activation_id, args.customer_id,
            args.pod_url, args.install_options, args.force_reinstall,
        )
        force = config.force_reinstall

        runner = runner or CommandRunner(default_timeout=settings.command_timeout)
        targets = RuntimeProbe(runner).probe()

        oracle = None
        if config.source_kind is SourceKind.REGISTRY:
            oracle = VersionOracle(settings.hub_tag_url)

        orchestrator = Orchestrator(
            lambda target: create_deployer(target, config, settings, runner=runner, sleep=sleep),
            oracle=oracle,
            max_workers=settings.max_workers,
        )
        exit_code, summary = orchestrator.run(targets, force)

    except InstallerError as e:
        logger.error(str(e))
        logger.debug("错误详情: %s", e.to_dict())
        if e.code is InstallerErrorCode.INVALID_INPUT:
            parser.print_usage(sys.stdout)
        exit_code = e.exit_code
        summary = RunSummary(force=force, exit_code=exit_code)

    print_summary(summary)
    return exit_code


# === 集群 ===

def build_k8s_parser() -> PositionalParser:
    parser = PositionalParser(
        prog="qcs-sensor-install-k8s",
        description="通过 Helm (或预生成的清单) 在集群中安装/升级 Qualys 容器传感器",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
示例:
  %(prog)s "--set customerId=... --set activationId=..." false
  %(prog)s "--set customerId=... --set activationId=..." false generate
        """,
    )
    parser.add_argument("chart_args", help="原样传给 helm 的 chart 参数 (一个引号包围的字符串)")
    parser.add_argument("force_reinstall", nargs="?", default="false",
                        help="是否强制重装 true/false")
    parser.add_argument("mode", nargs="?", default=None,
                        help="generate: 只生成无需 Helm 的清单")
    return parser


def run_k8s(
    argv: Optional[List[str]] = None,
    runner: Optional[CommandRunner] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """
    集群安装流程 (或 generate 模式)

    Returns:
        退出码
    """
    parser = build_k8s_parser()
    force = False
    lock = None
    try:
        settings = _bootstrap()
        args = parser.parse_args(argv)
        config = ClusterInstallConfig.from_positional(
            args.chart_args, args.force_reinstall, args.mode
        )
        force = config.force_reinstall
        runner = runner or CommandRunner(default_timeout=settings.command_timeout)

        if config.generate:
            generate_manifest(HelmWrapper(runner=runner), config, settings)
            return InstallerErrorCode.SUCCESS.value

        manifest = load_manifest(settings.manifest_path)
        targets = RuntimeProbe(runner).probe_cluster(manifest_available=manifest is not None)

        lock = ClusterLock.from_settings(KubectlWrapper(runner=runner), settings, sleep=sleep)
        orchestrator = Orchestrator(
            lambda target: create_deployer(
                target, config, settings, runner=runner, manifest=manifest, sleep=sleep
            ),
            oracle=VersionOracle(settings.hub_tag_url),
            lock=lock,
        )
        exit_code, summary = orchestrator.run(targets, force)

    except InstallerError as e:
        logger.error(str(e))
        logger.debug("错误详情: %s", e.to_dict())
        if e.code is InstallerErrorCode.INVALID_INPUT:
            parser.print_usage(sys.stdout)
        exit_code = e.exit_code
        summary = RunSummary(force=force, exit_code=exit_code)

    if lock is not None:
        lock.ensure_janitor()

    print_summary(summary)
    return exit_code


# === 锁清理 ===

def run_janitor(argv: Optional[List[str]] = None,
                runner: Optional[CommandRunner] = None) -> int:
    """删除过期的集群安装锁 (与 CronJob 规则相同)"""
    parser = PositionalParser(
        prog="qcs-sensor-lock-janitor",
        description="删除超过阈值的集群安装锁",
    )
    parser.add_argument("--max-age", type=int, default=None,
                        help="锁过期阈值 (秒), 默认 QCS_LOCK_STALE_SECONDS")
    try:
        settings = _bootstrap()
        args = parser.parse_args(argv)
        runner = runner or CommandRunner(default_timeout=settings.command_timeout)
        lock = ClusterLock.from_settings(KubectlWrapper(runner=runner), settings)
        lock.reclaim_if_stale(args.max_age)
    except InstallerError as e:
        logger.error(str(e))
        logger.debug("错误详情: %s", e.to_dict())
        return e.exit_code
    return InstallerErrorCode.SUCCESS.value


def main():
    """主机安装入口"""
    try:
        sys.exit(run_host())
    except KeyboardInterrupt:
        console.print("\n[yellow]⚠️  用户中断[/yellow]")
        sys.exit(InstallerErrorCode.DEPLOYMENT_FAILED.value)


def main_k8s():
    """集群安装入口"""
    try:
        sys.exit(run_k8s())
    except KeyboardInterrupt:
        console.print("\n[yellow]⚠️  用户中断[/yellow]")
        sys.exit(InstallerErrorCode.DEPLOYMENT_FAILED.value)


def main_janitor():
    """锁清理入口"""
    sys.exit(run_janitor())


if __name__ == "__main__":
    main()
