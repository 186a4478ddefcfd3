"""
测试公共夹具

提供不调用任何真实命令的假实现:
- FakeRunner: 按命令前缀返回预设结果的 CommandRunner
- FakeRuntimeClient: 内存中的容器运行时
- FakeKubectl: 内存中的 ConfigMap/CronJob 存储, create 为原子操作
"""

import json
import threading
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

import pytest

from qcs_sensor_installer.collectors.models import RuntimeKind, Target
from qcs_sensor_installer.collectors.runtime_client import RuntimeClient
from qcs_sensor_installer.config import InstallerSettings
from qcs_sensor_installer.utils.errors import DeployError, InstallerErrorCode


def ok(data="") -> Dict:
    return {"success": True, "data": data, "cmd": "", "returncode": 0}


def fail(error="error", returncode=1) -> Dict:
    return {"success": False, "error": error, "cmd": "", "returncode": returncode}


class FakeRunner:
    """按命令前缀匹配结果 (最长前缀优先), 记录所有调用"""

    def __init__(self, which: Optional[List[str]] = None,
                 paths: Optional[List[str]] = None):
        self.rules = []
        self.which_set = set(which or [])
        self.paths = set(paths or [])
        self.calls: List[List[str]] = []
        self.inputs: List[Optional[str]] = []

    def when(self, *prefix: str, result=None, data="", error=None) -> "FakeRunner":
        """注册规则 (同一前缀后注册的覆盖先注册的); result 可以是结果字典或 cmd -> 结果字典 的函数"""
        if result is None:
            result = fail(error) if error is not None else ok(data)
        self.rules = [rule for rule in self.rules if rule[0] != list(prefix)]
        self.rules.append((list(prefix), result))
        self.rules.sort(key=lambda rule: len(rule[0]), reverse=True)
        return self

    def which(self, binary: str) -> Optional[str]:
        return f"/usr/bin/{binary}" if binary in self.which_set else None

    def path_exists(self, path: str) -> bool:
        return path in self.paths

    def run(self, cmd, timeout=None, input=None, parse_json=False) -> Dict:
        cmd = list(cmd)
        self.calls.append(cmd)
        self.inputs.append(input)

        for prefix, result in self.rules:
            if cmd[:len(prefix)] == prefix:
                response = dict(result(cmd) if callable(result) else result)
                break
        else:
            response = fail(f"unexpected command: {' '.join(cmd)}")

        response.setdefault("cmd", " ".join(cmd))
        if parse_json and response["success"] and isinstance(response.get("data"), str):
            try:
                response["data"] = json.loads(response["data"])
            except json.JSONDecodeError:
                pass
        return response

    def called(self, *prefix: str) -> List[List[str]]:
        return [c for c in self.calls if c[:len(prefix)] == list(prefix)]


class FakeRuntimeClient(RuntimeClient):
    """内存中的容器运行时

    Args:
        kind: 运行时类型
        containers: 初始容器 {name: {"running": bool, "identity": str}}
        launch_running: run/安装脚本创建的容器是否处于运行状态
    """

    def __init__(self, kind: RuntimeKind = RuntimeKind.DOCKER,
                 containers: Optional[Dict[str, Dict]] = None,
                 launch_running: bool = True,
                 reachable: bool = True,
                 pull_error: bool = False,
                 run_error: bool = False,
                 socket: str = "/var/run/docker.sock",
                 socket_present: bool = True,
                 fail_commands: Optional[List[str]] = None,
                 image_identity: str = "sha256:new"):
        self.kind = kind
        self.containers = {k: dict(v) for k, v in (containers or {}).items()}
        self.launch_running = launch_running
        self.reachable = reachable
        self.pull_error = pull_error
        self.run_error = run_error
        self.socket = socket
        self.socket_present = socket_present
        self.fail_commands = set(fail_commands or [])
        self.new_identity = image_identity
        self.events: List[tuple] = []

    def _create(self, name: str) -> None:
        self.containers[name] = {"running": self.launch_running, "identity": self.new_identity}

    def info(self) -> bool:
        return self.reachable

    def inspect(self, name):
        container = self.containers.get(name)
        if container is None:
            return None
        return {"Name": name, "State": {"Running": container["running"]}}

    def list(self, name):
        return [f"id-{name}"] if name in self.containers else []

    def stop(self, name):
        self.events.append(("stop", name))
        if name in self.containers:
            self.containers[name]["running"] = False

    def remove(self, name):
        self.events.append(("remove", name))
        self.containers.pop(name, None)

    def pull(self, image):
        self.events.append(("pull", image))
        if self.pull_error:
            raise DeployError("pull failed", code=InstallerErrorCode.PULL_FAILED)

    def run(self, args):
        self.events.append(("run", list(args)))
        if self.run_error:
            raise DeployError("launch failed", code=InstallerErrorCode.LAUNCH_FAILED)
        name = args[args.index("--name") + 1]
        self._create(name)
        return "0123456789abcdef"

    def logs(self, name, tail=50):
        return "sensor log line" if name in self.containers else ""

    def image_identity(self, name):
        container = self.containers.get(name)
        return container.get("identity") if container else None

    def socket_path(self):
        return self.socket

    def socket_exists(self, path):
        return self.socket_present

    def execute(self, cmd, timeout=None):
        self.events.append(("exec", list(cmd)))
        if any(cmd[0].endswith(name) for name in self.fail_commands):
            return fail("command failed")
        if cmd[0].endswith("installsensor.sh"):
            self._create("qualys-container-sensor")
        return ok()

    def context_path(self, path):
        return path

    def event_names(self) -> List[str]:
        return [event[0] for event in self.events]


class FakeKubectl:
    """内存中的 kubectl (ConfigMap 与 CronJob)

    create_configmap 在锁内完成 "检查 + 写入", 与 API server 的原子创建语义一致
    """

    def __init__(self, clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self.clock = clock
        self.configmaps: Dict[tuple, Dict] = {}
        self.cronjobs: Dict[tuple, str] = {}
        self.create_calls = 0
        self.delete_calls = 0
        self.fail_delete = False
        self.create_error: Optional[str] = None
        self.get_error: Optional[str] = None
        self._lock = threading.Lock()

    def create_configmap(self, name, namespace, literals):
        with self._lock:
            self.create_calls += 1
            if self.create_error:
                return fail(self.create_error)
            key = (namespace, name)
            if key in self.configmaps:
                return fail(f'configmaps "{name}" already exists')
            self.configmaps[key] = {
                "metadata": {
                    "name": name,
                    "namespace": namespace,
                    "creationTimestamp": self.clock().strftime("%Y-%m-%dT%H:%M:%SZ"),
                },
                "data": dict(literals),
            }
            return ok()

    def get_configmap(self, name, namespace):
        with self._lock:
            if self.get_error:
                return fail(self.get_error)
            record = self.configmaps.get((namespace, name))
            if record is None:
                return fail(f'configmaps "{name}" not found')
            return ok(json.loads(json.dumps(record)))

    def delete_configmap(self, name, namespace):
        with self._lock:
            self.delete_calls += 1
            if self.fail_delete:
                return fail("forbidden")
            self.configmaps.pop((namespace, name), None)
            return ok()

    def get_cronjob(self, name, namespace):
        if (namespace, name) in self.cronjobs:
            return ok(name)
        return fail("not found")

    def apply(self, manifest, namespace=None, timeout=120):
        import yaml

        doc = yaml.safe_load(manifest)
        self.cronjobs[(namespace or doc["metadata"]["namespace"], doc["metadata"]["name"])] = manifest
        return ok()

    def put_lock(self, name, namespace, owner, created: datetime):
        """直接写入一条锁记录 (模拟其他调用方持有)"""
        self.configmaps[(namespace, name)] = {
            "metadata": {
                "name": name,
                "namespace": namespace,
                "creationTimestamp": created.strftime("%Y-%m-%dT%H:%M:%SZ"),
            },
            "data": {
                "owner": owner,
                "timestamp": created.strftime("%Y-%m-%dT%H:%M:%SZ"),
                "pid": "4242",
            },
        }


def no_sleep(_seconds):
    return None


@pytest.fixture
def settings():
    return InstallerSettings(verify_timeout=3, verify_interval=1, fetch_backoff=0,
                             lock_retry_delay=0)


@pytest.fixture
def docker_target():
    return Target(context="native", runtime=RuntimeKind.DOCKER)


@pytest.fixture
def podman_target():
    return Target(context="native", runtime=RuntimeKind.PODMAN)


@pytest.fixture
def cluster_target():
    return Target(context="cluster", runtime=RuntimeKind.HELM)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """测试不受外部 QCS_ 环境变量影响"""
    import os

    for key in list(os.environ):
        if key.startswith("QCS_"):
            monkeypatch.delenv(key, raising=False)
