"""部署器基类"""

import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict

from ..collectors.models import InstallPlan, SensorInstance, Target
from ..utils.errors import DeployError, InstallerErrorCode
from ..utils.retry import poll_until

logger = logging.getLogger(__name__)


class BaseDeployer(ABC):
    """单个目标的部署器

    部署流程: (按需) 拆除现有实例 -> 安装 -> 轮询校验运行状态

    Args:
        target: 部署目标
        verify_timeout: 校验超时 (秒)
        verify_interval: 校验轮询间隔 (秒)
        sleep: 等待函数 (测试中注入空函数)
    """

    def __init__(
        self,
        target: Target,
        verify_timeout: float = 30,
        verify_interval: float = 1,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.target = target
        self.verify_timeout = verify_timeout
        self.verify_interval = verify_interval
        self.sleep = sleep

    @abstractmethod
    def query_instance(self) -> SensorInstance:
        """查询目标上传感器的当前状态 (不缓存)"""

    @abstractmethod
    def teardown(self, instance: SensorInstance, plan: InstallPlan) -> None:
        """停止并删除现有实例, 已停止/已删除视为成功"""

    @abstractmethod
    def install(self, plan: InstallPlan) -> None:
        """执行安装 (下载安装, 拉取启动, 或 chart/清单部署)"""

    @abstractmethod
    def is_running(self) -> bool:
        """实例是否已处于运行状态"""

    def diagnostics(self) -> Dict[str, Any]:
        """校验失败时附加到错误中的诊断信息"""
        return {}

    def verify(self) -> None:
        """
        轮询直到实例运行或超时

        Raises:
            DeployError: 超时仍未运行 (26)
        """
        logger.info(f"[{self.target.name}] 等待传感器进入运行状态 "
                    f"(最多 {self.verify_timeout:g} 秒)...")
        if poll_until(self.is_running, self.verify_timeout,
                      self.verify_interval, sleep=self.sleep):
            return

        raise DeployError(
            f"传感器在 {self.verify_timeout:g} 秒内未进入运行状态",
            code=InstallerErrorCode.VERIFICATION_FAILED,
            target=self.target.name,
            details=self.diagnostics(),
        )

    def deploy(self, plan: InstallPlan, instance: SensorInstance) -> str:
        """
        执行决策

        Args:
            plan: 决策结果
            instance: 决策时查询到的实例状态

        Returns:
            成功消息

        Raises:
            DeployError: 任一步骤失败
        """
        if plan.is_skip:
            return plan.reason

        if plan.teardown:
            logger.info(f"[{self.target.name}] 移除现有传感器实例...")
            self.teardown(instance, plan)

        self.install(plan)
        self.verify()
        return f"{plan.action.value} completed, sensor running"
