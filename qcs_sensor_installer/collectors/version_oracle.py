"""
版本检查

通过 Docker Hub 的 tag 元数据接口获取 latest 的 digest (不消耗拉取配额),
与本地运行中容器的镜像标识比较。版本检查仅作参考: 任何获取失败都视为 "不过期"。
"""

import logging
import threading
from typing import Callable, Optional

import requests

logger = logging.getLogger(__name__)

DEFAULT_HUB_TAG_URL = "https://hub.docker.com/v2/repositories/qualys/qcs-sensor/tags/latest"

_UNSET = object()


class VersionOracle:
    """判断运行中的传感器是否过期

    远端标识在一次运行中最多获取一次, 多个目标共享结果

    Args:
        tag_url: tag 元数据接口地址
        timeout: HTTP 超时 (秒)
        fetcher: 自定义远端标识获取函数 (测试注入), 返回 digest 或 None
    """

    def __init__(
        self,
        tag_url: str = DEFAULT_HUB_TAG_URL,
        timeout: float = 15,
        fetcher: Optional[Callable[[], Optional[str]]] = None,
        session: Optional[requests.Session] = None,
    ):
        self.tag_url = tag_url
        self.timeout = timeout
        self.fetcher = fetcher or self._fetch_remote_identity
        self.session = session or requests.Session()
        self._remote = _UNSET
        self._lock = threading.Lock()

    def remote_identity(self) -> Optional[str]:
        """远端 latest 的 digest, 获取失败返回 None"""
        with self._lock:
            if self._remote is _UNSET:
                try:
                    self._remote = self.fetcher()
                except (requests.RequestException, ValueError) as e:
                    logger.warning(f"获取最新镜像版本失败, 视为已是最新: {e}")
                    self._remote = None
            return self._remote

    def is_outdated(self, running_identity: Optional[str]) -> bool:
        """
        运行中的镜像标识是否与远端 latest 不同

        Args:
            running_identity: 本地运行中容器的镜像标识

        Returns:
            远端和本地标识都已知且不同时返回 True, 其余情况返回 False
        """
        if not running_identity:
            logger.info("无法获取运行中容器的镜像标识, 跳过版本检查")
            return False

        remote = self.remote_identity()
        if not remote:
            return False

        outdated = remote != running_identity
        if outdated:
            logger.info(f"发现新版本: 本地 {running_identity[:19]} != 最新 {remote[:19]}")
        else:
            logger.info("运行中的传感器已是最新版本")
        return outdated

    def _fetch_remote_identity(self) -> Optional[str]:
        response = self.session.get(self.tag_url, timeout=self.timeout)
        response.raise_for_status()
        return parse_tag_digest(response.json())


def parse_tag_digest(payload: dict) -> Optional[str]:
    """从 tag 元数据中取 digest: 顶层 digest 优先, 否则 images[0].digest"""
    if not isinstance(payload, dict):
        return None

    digest = payload.get("digest")
    if digest:
        return digest

    images = payload.get("images") or []
    if images and isinstance(images[0], dict):
        return images[0].get("digest") or None
    return None
