"""
安装决策

根据目标上传感器的当前状态和 force 标志, 决定 Install / Upgrade / ForceReinstall / Skip。
决策是纯函数, 不产生任何副作用。
"""

import logging
from typing import Optional

from .collectors.models import InstallAction, InstallPlan, SensorInstance, SourceKind
from .collectors.version_oracle import VersionOracle

logger = logging.getLogger(__name__)

# 需要先停止并删除现有实例的动作
TEARDOWN_ACTIONS = (InstallAction.FORCE_REINSTALL, InstallAction.UPGRADE)


def decide(
    force: bool,
    exists: bool,
    running: bool,
    outdated: bool,
    source_kind: SourceKind,
) -> InstallPlan:
    """
    安装决策 (按优先级依次判断)

    1. force -> ForceReinstall
    2. 不存在 -> Install
    3. 存在但未运行 -> ForceReinstall (修复)
    4. 运行中, 镜像来源且过期 -> Upgrade
    5. 其他 -> Skip

    Args:
        force: 是否强制重装
        exists: 实例是否存在
        running: 实例是否运行中
        outdated: 实例是否过期 (仅镜像来源有意义)
        source_kind: 安装来源

    Returns:
        InstallPlan
    """
    if force:
        action = InstallAction.FORCE_REINSTALL
        reason = "force reinstall requested"
    elif not exists:
        action = InstallAction.INSTALL
        reason = "no existing sensor instance"
    elif not running:
        action = InstallAction.FORCE_REINSTALL
        reason = "sensor exists but is not running (repair)"
    elif source_kind is SourceKind.REGISTRY and outdated:
        action = InstallAction.UPGRADE
        reason = "running sensor image is outdated"
    else:
        action = InstallAction.SKIP
        reason = "sensor is running and up to date"

    return InstallPlan(
        action=action,
        reason=reason,
        teardown=exists and action in TEARDOWN_ACTIONS,
    )


def decide_for_instance(
    instance: SensorInstance,
    force: bool,
    oracle: Optional[VersionOracle] = None,
) -> InstallPlan:
    """根据查询到的实例状态做决策

    只有镜像来源, 非强制, 且实例正在运行时才调用版本检查;
    压缩包来源的传感器会自我更新, 从不检查版本
    """
    outdated = False
    needs_version_check = (
        not force
        and instance.exists
        and instance.running
        and instance.source_kind is SourceKind.REGISTRY
    )
    if needs_version_check and oracle is not None:
        outdated = oracle.is_outdated(instance.image_identity)

    plan = decide(
        force=force,
        exists=instance.exists,
        running=instance.running,
        outdated=outdated,
        source_kind=instance.source_kind,
    )
    logger.debug(f"决策: {plan.action.value} ({plan.reason})")
    return plan
