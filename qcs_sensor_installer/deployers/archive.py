"""
压缩包获取与解压

HTTP(S) 位置通过 requests 下载, 瞬时错误按线性退避有限次重试;
本地路径和 file:// 直接复制。解压目录按目标隔离, 并用文件锁保护。
"""

import logging
import lzma
import os
import shutil
import tarfile
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional
from urllib.parse import unquote, urlsplit

import requests
from filelock import FileLock, Timeout

from ..collectors.models import Target
from ..utils.errors import DeployError, InstallerErrorCode
from ..utils.retry import TRANSIENT_FETCH_ERRORS, bounded_retry

logger = logging.getLogger(__name__)

ARCHIVE_FILE_NAME = "QualysContainerSensor.tar.xz"
INSTALLER_SCRIPT = "installsensor.sh"
CHUNK_SIZE = 1024 * 1024


class TransientHTTPError(requests.HTTPError):
    """可重试的 HTTP 状态 (5xx, 429)"""


FETCH_RETRY_ERRORS = TRANSIENT_FETCH_ERRORS + (TransientHTTPError,)


class ArchiveFetcher:
    """压缩包获取与解压

    Args:
        work_dir: 工作目录根
        attempts: 下载最大尝试次数
        backoff: 线性退避步长 (秒)
        timeout: 单次 HTTP 请求超时 (秒)
        sleep: 等待函数 (测试中注入空函数)
        session: requests 会话
        lock_timeout: 等待工作目录文件锁的超时 (秒)
    """

    def __init__(
        self,
        work_dir: Path,
        attempts: int = 3,
        backoff: float = 2,
        timeout: float = 60,
        sleep: Callable[[float], None] = time.sleep,
        session: Optional[requests.Session] = None,
        lock_timeout: float = 300,
    ):
        self.work_dir = Path(work_dir)
        self.attempts = attempts
        self.backoff = backoff
        self.timeout = timeout
        self.sleep = sleep
        self.session = session or requests.Session()
        self.lock_timeout = lock_timeout

    @contextmanager
    def workspace(self, target: Target) -> Iterator[Path]:
        """
        目标专属的干净工作目录

        同一主机上的两个调用不会解压到同一目录
        """
        try:
            self.work_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise DeployError(
                f"无法创建工作目录 {self.work_dir}: {e}",
                code=InstallerErrorCode.PERMISSION_DENIED,
                target=target.name,
            )

        path = self.work_dir / target.slug
        lock = FileLock(str(self.work_dir / f"{target.slug}.lock"))
        try:
            lock.acquire(timeout=self.lock_timeout)
        except Timeout:
            raise DeployError(
                f"工作目录被另一个安装进程占用: {path}",
                code=InstallerErrorCode.DEPLOYMENT_FAILED,
                target=target.name,
            )

        try:
            if path.exists():
                shutil.rmtree(path)
            path.mkdir(parents=True)
            yield path
        finally:
            lock.release()

    # === 获取 ===

    def fetch(self, location: str, dest_dir: Path) -> Path:
        """
        获取压缩包到 dest_dir

        Args:
            location: http(s) URL, file:// URL 或本地路径
            dest_dir: 保存目录

        Returns:
            压缩包路径

        Raises:
            DeployError: 下载失败 (11)
        """
        dest = Path(dest_dir) / ARCHIVE_FILE_NAME
        parts = urlsplit(location)
        scheme = parts.scheme.lower()

        if scheme in ("http", "https"):
            logger.info(f"下载压缩包: {_redact(location)}")
            self._download(location, dest)
        elif scheme == "file":
            self._copy(unquote(parts.path), dest)
        elif not scheme or len(scheme) == 1:
            # 本地路径 (含 Windows 盘符)
            self._copy(location, dest)
        else:
            raise DeployError(
                f"不支持的位置协议 {scheme}://, 请使用预签名的 https URL",
                code=InstallerErrorCode.DOWNLOAD_FAILED,
            )

        logger.info(f"压缩包已就绪 ({dest.stat().st_size} bytes)")
        return dest

    def _download(self, url: str, dest: Path) -> None:
        retrying = bounded_retry(
            max_attempts=self.attempts,
            interval=self.backoff,
            backoff="linear",
            exceptions=FETCH_RETRY_ERRORS,
            sleep=self.sleep,
        )
        try:
            retrying(self._download_once, url, dest)
        except (requests.RequestException, OSError) as e:
            raise DeployError(
                f"压缩包下载失败: {e}",
                code=InstallerErrorCode.DOWNLOAD_FAILED,
                details={"location": _redact(url)},
            )

    def _download_once(self, url: str, dest: Path) -> None:
        with self.session.get(url, stream=True, timeout=self.timeout) as response:
            if response.status_code >= 500 or response.status_code == 429:
                raise TransientHTTPError(
                    f"{response.status_code} Server Error", response=response
                )
            response.raise_for_status()

            with open(dest, "wb") as f:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    if chunk:
                        f.write(chunk)

    def _copy(self, path: str, dest: Path) -> None:
        source = Path(path).expanduser()
        if not source.is_file():
            raise DeployError(
                f"压缩包不存在: {source}",
                code=InstallerErrorCode.DOWNLOAD_FAILED,
            )
        logger.info(f"复制本地压缩包: {source}")
        try:
            shutil.copyfile(source, dest)
        except OSError as e:
            raise DeployError(
                f"复制压缩包失败: {e}",
                code=InstallerErrorCode.DOWNLOAD_FAILED,
            )

    # === 解压 ===

    def extract(self, archive: Path, dest_dir: Path) -> Path:
        """
        解压并定位安装脚本

        Returns:
            installsensor.sh 的路径

        Raises:
            DeployError: 解压失败或压缩包中没有安装脚本 (10)
        """
        logger.info("解压压缩包...")
        try:
            Path(dest_dir).mkdir(parents=True, exist_ok=True)
            with tarfile.open(archive, "r:xz") as tf:
                _safe_extractall(tf, dest_dir)
        except (tarfile.TarError, lzma.LZMAError, OSError) as e:
            raise DeployError(
                f"解压失败: {e}",
                code=InstallerErrorCode.EXTRACT_FAILED,
            )

        script = find_installer(Path(dest_dir))
        if script is None:
            raise DeployError(
                f"压缩包中未找到 {INSTALLER_SCRIPT}",
                code=InstallerErrorCode.EXTRACT_FAILED,
            )

        script.chmod(script.stat().st_mode | 0o755)
        logger.info("解压完成")
        return script


def find_installer(root: Path) -> Optional[Path]:
    """在解压目录中查找安装脚本 (最浅的一个)"""
    candidates = sorted(root.rglob(INSTALLER_SCRIPT), key=lambda p: len(p.parts))
    return candidates[0] if candidates else None


def _safe_extractall(tf: tarfile.TarFile, dest_dir: Path) -> None:
    """安全解压: 支持时使用 data 过滤器, 否则拒绝越界路径"""
    if hasattr(tarfile, "data_filter"):
        tf.extractall(dest_dir, filter="data")
        return

    root = os.path.realpath(dest_dir)
    for member in tf.getmembers():
        target = os.path.realpath(os.path.join(root, member.name))
        if os.path.commonpath([root, target]) != root or member.issym() or member.islnk():
            raise tarfile.TarError(f"unsafe archive member: {member.name}")
    tf.extractall(dest_dir)


def _redact(url: str) -> str:
    """去掉签名 URL 的查询参数, 避免凭据进入日志"""
    parts = urlsplit(url)
    if not parts.query:
        return url
    return f"{parts.scheme}://{parts.netloc}{parts.path}?<redacted>"
