"""
集群安装锁

以固定名称的 ConfigMap 作为锁记录: `kubectl create` 在记录已存在时失败,
创建本身就是原子的 "不存在才创建", 两个调用方不可能同时成功。

状态: Unlocked -> (创建成功) -> Locked(owner) -> (释放 或 清理任务回收) -> Unlocked

持有者崩溃时由集群内的 CronJob 清理超过阈值的锁记录。
"""

import logging
import os
import socket
import time
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Tuple

import yaml
from tenacity import RetryError

from .collectors.k8s_client import KubectlWrapper
from .utils.errors import CommandError, InstallerErrorCode
from .utils.retry import bounded_retry

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

# kubectl 输出中表示 API server 不可达的片段
UNREACHABLE_MARKERS = (
    "unable to connect",
    "connection refused",
    "i/o timeout",
    "no such host",
    "timed out",
)

JANITOR_IMAGE = "bitnami/kubectl:latest"

# CronJob 中执行的清理脚本, 与 reclaim_if_stale 的规则相同
JANITOR_SCRIPT = """\
LOCK_NAME="{lock_name}"
LOCK_NAMESPACE="{lock_namespace}"
TIMEOUT_SECONDS={stale_seconds}

if kubectl get configmap "$LOCK_NAME" -n "$LOCK_NAMESPACE" >/dev/null 2>&1; then
  CREATION_TIME=$(kubectl get configmap "$LOCK_NAME" -n "$LOCK_NAMESPACE" -o jsonpath='{{.metadata.creationTimestamp}}')
  CREATION_SECONDS=$(date -d "$CREATION_TIME" +%s 2>/dev/null || date -j -f "%Y-%m-%dT%H:%M:%SZ" "$CREATION_TIME" +%s)
  NOW_SECONDS=$(date +%s)
  AGE=$((NOW_SECONDS - CREATION_SECONDS))

  if [ "$AGE" -gt "$TIMEOUT_SECONDS" ]; then
    echo "[INFO] Deleting stale lock ($LOCK_NAME) older than $((TIMEOUT_SECONDS/60)) minutes"
    kubectl delete configmap "$LOCK_NAME" -n "$LOCK_NAMESPACE"
  else
    echo "[INFO] Lock is still valid (age: $((AGE/60)) minutes)"
  fi
else
  echo "[INFO] No lock found"
fi
"""


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def is_already_exists(error: Optional[str]) -> bool:
    """kubectl create 因记录已存在而失败 (锁被占用)"""
    text = (error or "").lower()
    return "alreadyexists" in text or "already exists" in text


def is_not_found(error: Optional[str]) -> bool:
    text = (error or "").lower()
    return "notfound" in text or "not found" in text


def classify_lock_error(error: Optional[str]) -> InstallerErrorCode:
    """
    把非争用的 kubectl 失败映射到退出码

    - 权限不足或命名空间不存在 -> NAMESPACE_ERROR
    - API server 不可达 -> CLUSTER_UNREACHABLE
    - 其他 -> LOCK_TIMEOUT
    """
    text = (error or "").lower()
    if "forbidden" in text or ("namespaces" in text and is_not_found(text)):
        return InstallerErrorCode.NAMESPACE_ERROR
    if any(marker in text for marker in UNREACHABLE_MARKERS):
        return InstallerErrorCode.CLUSTER_UNREACHABLE
    return InstallerErrorCode.LOCK_TIMEOUT


def parse_timestamp(value: str) -> Optional[datetime]:
    """解析 K8s 时间戳 (如 2024-01-01T00:00:00Z), 无法解析返回 None"""
    try:
        return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
    except (TypeError, ValueError):
        return None


class ClusterLock:
    """基于 ConfigMap 的集群互斥锁

    Args:
        kubectl: kubectl 封装
        name: 锁记录名称
        namespace: 锁记录所在命名空间
        attempts: 获取锁的最大尝试次数
        retry_delay: 两次尝试之间的固定间隔 (秒)
        stale_seconds: 锁记录被视为过期的年龄阈值 (秒)
        janitor_name: 清理 CronJob 名称
        janitor_schedule: 清理 CronJob 的调度表达式
        sleep: 等待函数 (测试中注入空函数)
        clock: 当前时间函数
    """

    def __init__(
        self,
        kubectl: KubectlWrapper,
        name: str = "qualys-helm-install-lock",
        namespace: str = "kube-system",
        attempts: int = 3,
        retry_delay: float = 5,
        stale_seconds: int = 900,
        janitor_name: str = "clear-stale-qualys-lock",
        janitor_schedule: str = "*/15 * * * *",
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.kubectl = kubectl
        self.name = name
        self.namespace = namespace
        self.attempts = attempts
        self.retry_delay = retry_delay
        self.stale_seconds = stale_seconds
        self.janitor_name = janitor_name
        self.janitor_schedule = janitor_schedule
        self.sleep = sleep
        self.clock = clock
        self._record: Optional[Dict[str, str]] = None

    @classmethod
    def from_settings(cls, kubectl: KubectlWrapper, settings,
                      sleep: Callable[[float], None] = time.sleep) -> "ClusterLock":
        """根据 InstallerSettings 构建"""
        return cls(
            kubectl,
            name=settings.lock_name,
            namespace=settings.lock_namespace,
            attempts=settings.lock_attempts,
            retry_delay=settings.lock_retry_delay,
            stale_seconds=settings.lock_stale_seconds,
            janitor_name=settings.janitor_name,
            janitor_schedule=settings.janitor_schedule,
            sleep=sleep,
        )

    @property
    def held(self) -> bool:
        """本实例当前是否持有锁"""
        return self._record is not None

    # === 获取 / 释放 ===

    def attempts_for(self, timeout_budget: Optional[float] = None) -> int:
        """等待预算 (秒) 换算为尝试次数, 未指定时使用 attempts"""
        if timeout_budget is None or self.retry_delay <= 0:
            return self.attempts
        return int(max(timeout_budget, 0) // self.retry_delay) + 1

    def try_acquire(self, owner: Optional[str] = None,
                    timeout_budget: Optional[float] = None) -> bool:
        """
        尝试获取锁

        只有 "记录已存在" 才算锁被占用: 按固定间隔重试, 用尽后返回 False,
        不会无限等待。其他 kubectl 失败 (无权限, 命名空间不存在, 集群不可达)
        不重试, 直接抛出 CommandError

        Args:
            owner: 持有者标识 (默认主机名)
            timeout_budget: 等待锁的总时长 (秒), 默认 attempts x retry_delay

        Returns:
            是否获取成功

        Raises:
            CommandError: 非争用的创建失败
        """
        if self.held:
            return True

        max_attempts = self.attempts_for(timeout_budget)
        record = {
            "owner": owner or socket.gethostname(),
            "timestamp": self.clock().strftime(TIMESTAMP_FORMAT),
            "pid": str(os.getpid()),
        }
        attempt_no = 0

        def attempt() -> bool:
            nonlocal attempt_no
            attempt_no += 1
            result = self.kubectl.create_configmap(self.name, self.namespace, record)
            if result["success"]:
                logger.info(f"已获取集群安装锁 (第 {attempt_no}/{max_attempts} 次尝试)")
                return True

            error = result.get("error")
            if not is_already_exists(error):
                raise CommandError(
                    f"无法创建集群安装锁 {self.namespace}/{self.name}",
                    cmd=result.get("cmd") or "kubectl create configmap",
                    stderr=error,
                    code=classify_lock_error(error),
                )

            if attempt_no < max_attempts:
                logger.info(f"锁已被占用 (第 {attempt_no}/{max_attempts} 次尝试), "
                            f"{self.retry_delay} 秒后重试...")
            logger.debug(f"kubectl create configmap: {error}")
            return False

        retrying = bounded_retry(
            max_attempts=max_attempts,
            interval=self.retry_delay,
            until=bool,
            sleep=self.sleep,
            reraise=False,
            log_retries=False,
        )
        try:
            acquired = bool(retrying(attempt))
        except RetryError:
            acquired = False

        if acquired:
            self._record = record
        else:
            logger.warning(f"{max_attempts} 次尝试后仍未获取集群安装锁")
        return acquired

    def release(self) -> None:
        """
        释放锁 (尽力而为)

        只删除仍属于本实例的锁记录; 失败只记录日志不抛出, 由清理任务兜底
        """
        if not self.held:
            return

        record, self._record = self._record, None

        current, readable = self._read_record()
        if not readable:
            logger.warning("释放锁时无法读取锁记录, 仍尝试删除")
        elif current is None:
            logger.warning("释放锁时锁记录已不存在 (可能已被清理任务回收)")
            return
        elif any(current.get(key) != value for key, value in record.items()):
            logger.warning(f"锁已被其他调用方持有, 不删除: {describe_holder(current)}")
            return

        result = self.kubectl.delete_configmap(self.name, self.namespace)
        if result["success"]:
            logger.info("已释放集群安装锁")
        else:
            logger.warning(f"释放集群安装锁失败, 将由清理任务回收: {result.get('error')}")

    def lock_info(self) -> Optional[Dict[str, str]]:
        """
        当前锁记录

        Returns:
            {"owner", "timestamp", "pid", "created"}; 锁不存在或无法读取时返回 None
        """
        return self._read_record()[0]

    def _read_record(self) -> Tuple[Optional[Dict[str, str]], bool]:
        """读取锁记录, 返回 (记录, 是否读取成功); 记录不存在也算读取成功"""
        result = self.kubectl.get_configmap(self.name, self.namespace)
        if not result["success"]:
            error = result.get("error")
            if is_not_found(error):
                return None, True
            logger.debug(f"读取锁记录失败: {error}")
            return None, False

        if not isinstance(result.get("data"), dict):
            return None, False

        data = dict(result["data"].get("data") or {})
        created = result["data"].get("metadata", {}).get("creationTimestamp")
        if created:
            data["created"] = created
        return data, True

    # === 过期回收 ===

    def reclaim_if_stale(self, max_age: Optional[int] = None,
                         now: Optional[datetime] = None) -> bool:
        """
        删除年龄超过阈值的锁记录

        年龄以记录的 creationTimestamp 为准 (集群时钟), 与 CronJob 的规则相同

        Args:
            max_age: 阈值 (秒), 默认 stale_seconds
            now: 当前时间 (默认 clock())

        Returns:
            是否删除了过期的锁
        """
        max_age = self.stale_seconds if max_age is None else max_age
        now = now or self.clock()

        info = self.lock_info()
        if info is None:
            logger.info("未发现锁记录")
            return False

        created = parse_timestamp(info.get("created") or info.get("timestamp"))
        if created is None:
            logger.warning(f"无法解析锁记录的创建时间: {info}")
            return False

        age = (now - created).total_seconds()
        if age <= max_age:
            logger.info(f"锁仍然有效 (已持有 {int(age // 60)} 分钟)")
            return False

        result = self.kubectl.delete_configmap(self.name, self.namespace)
        if not result["success"]:
            logger.error(f"删除过期锁失败: {result.get('error')}")
            return False

        logger.info(f"已删除超过 {max_age // 60} 分钟的过期锁 ({self.name})")
        return True

    # === 清理 CronJob ===

    def render_janitor_manifest(self) -> str:
        """渲染清理 CronJob 的 YAML"""
        script = JANITOR_SCRIPT.format(
            lock_name=self.name,
            lock_namespace=self.namespace,
            stale_seconds=self.stale_seconds,
        )
        cronjob = {
            "apiVersion": "batch/v1",
            "kind": "CronJob",
            "metadata": {
                "name": self.janitor_name,
                "namespace": self.namespace,
                "labels": {
                    "app": "qualys-lock-cleanup",
                    "managed-by": "qualys-installer",
                },
            },
            "spec": {
                "schedule": self.janitor_schedule,
                "successfulJobsHistoryLimit": 1,
                "failedJobsHistoryLimit": 1,
                "jobTemplate": {"spec": {"template": {"spec": {
                    "serviceAccountName": "default",
                    "restartPolicy": "OnFailure",
                    "containers": [{
                        "name": "cleanup",
                        "image": JANITOR_IMAGE,
                        "imagePullPolicy": "IfNotPresent",
                        "command": ["/bin/sh", "-c", script],
                        "resources": {
                            "limits": {"cpu": "100m", "memory": "128Mi"},
                            "requests": {"cpu": "50m", "memory": "64Mi"},
                        },
                    }],
                }}}},
            },
        }
        return yaml.safe_dump(cronjob, sort_keys=False)

    def ensure_janitor(self) -> bool:
        """
        注册清理 CronJob (仅在不存在时创建, 尽力而为)

        Returns:
            是否新建了 CronJob
        """
        if self.kubectl.get_cronjob(self.janitor_name, self.namespace)["success"]:
            logger.info("锁清理 CronJob 已存在, 跳过创建")
            return False

        logger.info("创建锁清理 CronJob...")
        result = self.kubectl.apply(self.render_janitor_manifest(), namespace=self.namespace)
        if not result["success"]:
            logger.warning(f"创建锁清理 CronJob 失败: {result.get('error')}")
            return False

        logger.info("锁清理 CronJob 创建成功")
        return True


def describe_holder(info: Optional[Dict[str, str]]) -> str:
    """锁持有者的描述 (用于 Skipped 原因)"""
    if not info:
        return "unknown holder"
    return (f"held by {info.get('owner', 'unknown')} "
            f"(pid {info.get('pid', '?')}) since {info.get('timestamp', '?')}")
