"""
重试与轮询模块

基于 Tenacity 库提供有界重试 (下载重试、锁获取) 和有界轮询 (部署后校验),
所有等待都有明确的次数上限, 不存在无限等待
"""

import logging
import time
from typing import Any, Callable, Optional, Tuple, Type

import requests
from tenacity import (
    RetryError,
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    wait_fixed,
    wait_incrementing,
)

logger = logging.getLogger(__name__)

# 下载类的瞬时错误
TRANSIENT_FETCH_ERRORS: Tuple[Type[Exception], ...] = (
    requests.ConnectionError,
    requests.Timeout,
    # 响应体中途断开或解压失败
    requests.exceptions.ChunkedEncodingError,
    requests.exceptions.ContentDecodingError,
    ConnectionError,
    TimeoutError,
)


def bounded_retry(
    max_attempts: int,
    interval: float,
    backoff: str = "fixed",
    exceptions: Tuple[Type[Exception], ...] = (),
    until: Optional[Callable[[Any], bool]] = None,
    sleep: Callable[[float], None] = time.sleep,
    reraise: bool = True,
    log_retries: bool = True,
) -> Retrying:
    """构建有界重试器

    下载重试、锁获取重试和运行状态轮询都使用这一个抽象, 区别只在参数

    Args:
        max_attempts: 最大尝试次数 (含第一次)
        interval: 等待间隔 (秒); linear 模式下为每次递增的步长
        backoff: "fixed" 固定间隔 | "linear" 线性退避 (interval, 2*interval, ...)
        exceptions: 需要重试的异常类型
        until: 结果判定函数, 返回 False 时继续重试
        sleep: 等待函数 (测试中注入空函数)
        reraise: 用尽次数后是否重新抛出最后一次的异常
        log_retries: 每次重试前是否记录 WARNING 日志

    Returns:
        tenacity.Retrying 实例

    Example:
        for attempt in bounded_retry(3, 2, backoff="linear",
                                     exceptions=TRANSIENT_FETCH_ERRORS):
            with attempt:
                download()
    """
    if max_attempts < 1:
        raise ValueError("max_attempts 必须 >= 1")

    if backoff == "linear":
        wait = wait_incrementing(start=interval, increment=interval)
    elif backoff == "fixed":
        wait = wait_fixed(interval)
    else:
        raise ValueError(f"不支持的退避策略: {backoff}")

    retry_condition = None
    if exceptions:
        retry_condition = retry_if_exception_type(exceptions)
    if until is not None:
        result_condition = retry_if_result(lambda result: not until(result))
        retry_condition = (
            result_condition if retry_condition is None
            else retry_condition | result_condition
        )

    kwargs = {}
    if retry_condition is not None:
        kwargs["retry"] = retry_condition

    return Retrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait,
        before_sleep=before_sleep_log(logger, logging.WARNING) if log_retries else None,
        sleep=sleep,
        reraise=reraise,
        **kwargs,
    )


def poll_until(
    predicate: Callable[[], bool],
    timeout: float,
    interval: float = 1,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """有界轮询, 直到 predicate 返回 True 或超时

    超时按 "次数 = timeout / interval + 1" 计算, 与真实时钟无关,
    保证到期行为确定

    Args:
        predicate: 检查函数
        timeout: 超时时间 (秒)
        interval: 轮询间隔 (秒)
        sleep: 等待函数

    Returns:
        是否在超时前满足条件
    """
    if interval <= 0:
        raise ValueError("interval 必须 > 0")

    max_attempts = int(timeout // interval) + 1
    retrying = bounded_retry(
        max_attempts=max_attempts,
        interval=interval,
        until=bool,
        sleep=sleep,
        reraise=False,
        log_retries=False,
    )

    try:
        return bool(retrying(predicate))
    except RetryError:
        return False
