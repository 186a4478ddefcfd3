"""
多目标部署编排

对每个目标独立执行: 查询实例 -> 决策 -> (集群目标) 获取锁 -> 部署 -> 记录结果,
单个目标失败不影响其他目标; 退出码只取决于成功/失败/跳过的数量。
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

from .collectors.models import (
    DeploymentResult,
    DeploymentStatus,
    Target,
)
from .collectors.version_oracle import VersionOracle
from .decision import decide_for_instance
from .deployers.base import BaseDeployer
from .lock import ClusterLock, describe_holder
from .utils.errors import (
    InstallerError,
    InstallerErrorCode,
    describe_exit_code,
)

logger = logging.getLogger(__name__)

SUMMARY_DELIMITER = "=" * 40

STATUS_SYMBOLS = {
    DeploymentStatus.SUCCESS: "[OK]",
    DeploymentStatus.FAILED: "[FAIL]",
    DeploymentStatus.SKIPPED: "[SKIP]",
}


def aggregate_exit_code(success: int, failed: int, skipped: int = 0) -> int:
    """
    根据结果数量计算退出码

    - 0: 无失败且至少一个成功
    - 6: 部分成功
    - 5: 全部失败
    - 7: 无需任何操作 (全部跳过)
    """
    if failed == 0 and success > 0:
        return InstallerErrorCode.SUCCESS.value
    if success > 0 and failed > 0:
        return InstallerErrorCode.PARTIAL_SUCCESS.value
    if success == 0 and failed > 0:
        return InstallerErrorCode.DEPLOYMENT_FAILED.value
    return InstallerErrorCode.NO_ACTION.value


@dataclass(frozen=True)
class RunSummary:
    """一次运行的汇总"""
    force: bool
    results: Tuple[DeploymentResult, ...] = ()
    exit_code: Optional[int] = None

    def _count(self, status: DeploymentStatus) -> int:
        return sum(1 for r in self.results if r.status is status)

    @property
    def success(self) -> int:
        return self._count(DeploymentStatus.SUCCESS)

    @property
    def failed(self) -> int:
        return self._count(DeploymentStatus.FAILED)

    @property
    def skipped(self) -> int:
        return self._count(DeploymentStatus.SKIPPED)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def mode(self) -> str:
        return "Force Reinstall" if self.force else "Install/Upgrade"

    def render(self) -> List[str]:
        """渲染摘要文本 (便于 grep 的固定格式)"""
        lines = [
            SUMMARY_DELIMITER,
            "Deployment Summary:",
            SUMMARY_DELIMITER,
            f"Mode: {self.mode}",
            f"Detected targets: {self.total}",
            "",
        ]
        for result in self.results:
            line = (f"{STATUS_SYMBOLS[result.status]} {result.target.name}: "
                    f"{result.status.value.upper()} - {result.message}")
            if result.error_code is not None:
                line += f" (code {result.error_code.value})"
            lines.append(line)

        lines.append("")
        tally = f"Total: {self.success}/{self.total} deployments successful"
        if self.skipped:
            tally += f" ({self.skipped} skipped)"
        lines.append(tally)
        lines.append(SUMMARY_DELIMITER)

        if self.exit_code is not None:
            lines.append(f"Exit code: {self.exit_code} ({describe_exit_code(self.exit_code)})")
        return lines


class Orchestrator:
    """多目标部署编排器

    Args:
        deployer_factory: 为目标创建部署器
        oracle: 版本检查 (仅镜像来源使用)
        lock: 集群锁 (仅集群目标使用)
        max_workers: 并行处理的目标数 (默认顺序处理)
    """

    def __init__(
        self,
        deployer_factory: Callable[[Target], BaseDeployer],
        oracle: Optional[VersionOracle] = None,
        lock: Optional[ClusterLock] = None,
        max_workers: int = 1,
    ):
        self.deployer_factory = deployer_factory
        self.oracle = oracle
        self.lock = lock
        self.max_workers = max(1, max_workers)

    def run(self, targets: Sequence[Target], force: bool) -> Tuple[int, RunSummary]:
        """
        处理全部目标并汇总

        Args:
            targets: 探测到的目标
            force: 是否强制重装

        Returns:
            (退出码, 汇总); 汇总中的结果顺序与 targets 一致

        Raises:
            InstallerError: 没有任何目标 (2)
        """
        if not targets:
            raise InstallerError("没有可部署的目标", code=InstallerErrorCode.NO_RUNTIME)

        if force:
            logger.info("强制重装模式: 移除并重新安装所有目标上的传感器")
        else:
            logger.info("安装/升级模式: 缺失时安装, 过期时升级")

        if self.max_workers > 1 and len(targets) > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                results = list(pool.map(lambda t: self.process_target(t, force), targets))
        else:
            results = [self.process_target(t, force) for t in targets]

        summary = RunSummary(force=force, results=tuple(results))
        exit_code = aggregate_exit_code(summary.success, summary.failed, summary.skipped)
        self._log_outcome(summary, exit_code)
        return exit_code, RunSummary(force=force, results=summary.results, exit_code=exit_code)

    def process_target(self, target: Target, force: bool) -> DeploymentResult:
        """处理单个目标, 失败在此边界转换为 Failed 结果"""
        logger.info(f"[{target.name}] 开始处理")
        action = None
        try:
            deployer = self.deployer_factory(target)
            instance = deployer.query_instance()
            plan = decide_for_instance(instance, force, self.oracle)
            action = plan.action
            logger.info(f"[{target.name}] 决策: {plan.action.value} ({plan.reason})")

            if plan.is_skip:
                return DeploymentResult(target, DeploymentStatus.SKIPPED, plan.reason, action)

            if target.is_cluster and self.lock is not None:
                if not self.lock.try_acquire():
                    holder = describe_holder(self.lock.lock_info())
                    reason = (f"cluster install lock not acquired, {holder}; "
                              "another installation is likely in progress")
                    logger.warning(f"[{target.name}] {reason}")
                    return DeploymentResult(target, DeploymentStatus.SKIPPED, reason, action)
                try:
                    message = deployer.deploy(plan, instance)
                finally:
                    self.lock.release()
            else:
                message = deployer.deploy(plan, instance)

            logger.info(f"[{target.name}] 部署成功")
            return DeploymentResult(target, DeploymentStatus.SUCCESS, message, action)

        except InstallerError as e:
            logger.error(f"[{target.name}] {e}")
            return DeploymentResult(
                target, DeploymentStatus.FAILED, e.message, action,
                error_code=e.code, details=e.details,
            )
        except Exception as e:
            logger.exception(f"[{target.name}] 部署时发生未预期的错误")
            return DeploymentResult(
                target, DeploymentStatus.FAILED, f"unexpected error: {e}", action,
                error_code=InstallerErrorCode.DEPLOYMENT_FAILED,
            )

    def _log_outcome(self, summary: RunSummary, exit_code: int) -> None:
        if exit_code == InstallerErrorCode.SUCCESS.value:
            logger.info("全部部署成功完成")
        elif exit_code == InstallerErrorCode.PARTIAL_SUCCESS.value:
            logger.warning(f"部分成功: {summary.success}/{summary.total} 个目标部署成功")
        elif exit_code == InstallerErrorCode.DEPLOYMENT_FAILED.value:
            logger.error("全部部署失败")
        else:
            logger.info("无需任何部署操作")
