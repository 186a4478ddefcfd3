"""
外部命令执行封装

docker / podman / kubectl / helm / wsl.exe 都通过这里以子进程方式调用,
返回统一的结果字典, 单元测试中用假实现替换
"""

import json
import logging
import os
import shutil
import subprocess
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


class CommandRunner:
    """子进程执行器

    所有调用都有超时, 不存在无限等待
    """

    def __init__(self, default_timeout: int = 120):
        """
        Args:
            default_timeout: 默认超时时间 (秒)
        """
        self.default_timeout = default_timeout

    def which(self, binary: str) -> Optional[str]:
        """在 PATH 中查找可执行文件"""
        return shutil.which(binary)

    def path_exists(self, path: str) -> bool:
        """本地文件是否存在"""
        return os.path.exists(path)

    def run(
        self,
        cmd: List[str],
        timeout: Optional[int] = None,
        input: Optional[str] = None,
        parse_json: bool = False,
    ) -> Dict:
        """
        执行命令并解析结果

        Args:
            cmd: 命令列表
            timeout: 超时时间（秒）, 默认使用 default_timeout
            input: 写入 stdin 的内容 (如 kubectl apply -f -)
            parse_json: 是否尝试把 stdout 解析为 JSON

        Returns:
            {"success": bool, "data": any, "error": str, "cmd": str, "returncode": int}
        """
        timeout = timeout or self.default_timeout
        cmd_str = " ".join(cmd)
        logger.debug(f"执行命令: {cmd_str}")

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout,
                input=input,
            )
        except subprocess.TimeoutExpired:
            return {
                "success": False,
                "error": f"Command timed out after {timeout}s",
                "cmd": cmd_str,
                "returncode": None,
            }
        except OSError as e:
            # 可执行文件不存在或无权限
            return {
                "success": False,
                "error": str(e),
                "cmd": cmd_str,
                "returncode": None,
            }

        if result.returncode != 0:
            return {
                "success": False,
                "error": (result.stderr or result.stdout).strip(),
                "cmd": cmd_str,
                "returncode": result.returncode,
            }

        data = result.stdout.strip()
        if parse_json and data:
            try:
                data = json.loads(data)
            except json.JSONDecodeError:
                # 不是 JSON，返回原始文本
                pass

        return {"success": True, "data": data, "cmd": cmd_str, "returncode": 0}
