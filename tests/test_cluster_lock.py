"""
测试集群安装锁
"""

import threading
from datetime import datetime, timedelta, timezone

import pytest
import yaml

from qcs_sensor_installer.lock import ClusterLock, describe_holder, parse_timestamp
from qcs_sensor_installer.utils.errors import CommandError, InstallerErrorCode

from conftest import FakeKubectl, no_sleep

NOW = datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def make_lock(kubectl, **kwargs):
    kwargs.setdefault("sleep", no_sleep)
    kwargs.setdefault("clock", lambda: NOW)
    return ClusterLock(kubectl, **kwargs)


def test_acquire_creates_record_with_owner_and_pid():
    kubectl = FakeKubectl()
    lock = make_lock(kubectl)

    assert lock.try_acquire(owner="node-a") is True
    info = lock.lock_info()
    assert info["owner"] == "node-a"
    assert info["timestamp"] == "2025-03-01T12:00:00Z"
    assert info["pid"].isdigit()
    assert lock.held


def test_concurrent_acquire_has_exactly_one_winner():
    kubectl = FakeKubectl()
    locks = [make_lock(kubectl), make_lock(kubectl)]
    barrier = threading.Barrier(2)
    results = {}

    def contend(index):
        barrier.wait()
        results[index] = locks[index].try_acquire(owner=f"node-{index}")

    threads = [threading.Thread(target=contend, args=(i,)) for i in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(results.values()) == [False, True]
    winner = next(i for i, acquired in results.items() if acquired)
    assert kubectl.get_configmap("qualys-helm-install-lock", "kube-system")["data"]["data"][
        "owner"] == f"node-{winner}"
    assert kubectl.delete_calls == 0


def test_acquire_gives_up_after_bounded_attempts():
    kubectl = FakeKubectl()
    kubectl.put_lock("qualys-helm-install-lock", "kube-system", "node-b", NOW)
    sleeps = []
    lock = make_lock(kubectl, attempts=3, retry_delay=5, sleep=sleeps.append)

    assert lock.try_acquire(owner="node-a") is False
    assert kubectl.create_calls == 3
    assert sleeps == [5, 5]
    assert lock.lock_info()["owner"] == "node-b"


def test_release_deletes_own_record():
    kubectl = FakeKubectl()
    lock = make_lock(kubectl)
    lock.try_acquire(owner="node-a")

    lock.release()

    assert lock.lock_info() is None
    assert not lock.held
    assert make_lock(kubectl).try_acquire(owner="node-b") is True


def test_release_leaves_foreign_record_alone():
    kubectl = FakeKubectl()
    lock = make_lock(kubectl)
    lock.try_acquire(owner="node-a")

    # 锁被回收后由其他节点重新获取
    kubectl.configmaps.clear()
    kubectl.put_lock("qualys-helm-install-lock", "kube-system", "node-b", NOW)

    lock.release()

    assert lock.lock_info()["owner"] == "node-b"


def test_release_failure_is_swallowed():
    kubectl = FakeKubectl()
    lock = make_lock(kubectl)
    lock.try_acquire(owner="node-a")
    kubectl.fail_delete = True

    lock.release()

    assert not lock.held
    assert lock.lock_info()["owner"] == "node-a"


@pytest.mark.parametrize("error,code", [
    ('configmaps is forbidden: User "system:serviceaccount:ci:runner" cannot create '
     'resource "configmaps" in API group "" in the namespace "kube-system"',
     InstallerErrorCode.NAMESPACE_ERROR),
    ('namespaces "kube-system" not found', InstallerErrorCode.NAMESPACE_ERROR),
    ("Unable to connect to the server: dial tcp 10.0.0.1:6443: connect: connection refused",
     InstallerErrorCode.CLUSTER_UNREACHABLE),
    ("Command timed out after 15s", InstallerErrorCode.CLUSTER_UNREACHABLE),
    ("Error from server (InternalError): etcdserver: request timed out, possibly due to "
     "previous leader failure", InstallerErrorCode.CLUSTER_UNREACHABLE),
    ("Error from server (InternalError): an error on the server", InstallerErrorCode.LOCK_TIMEOUT),
])
def test_non_contention_create_failure_is_raised(error, code):
    kubectl = FakeKubectl()
    kubectl.create_error = error
    sleeps = []
    lock = make_lock(kubectl, attempts=3, retry_delay=5, sleep=sleeps.append)

    with pytest.raises(CommandError) as exc_info:
        lock.try_acquire(owner="node-a")

    assert exc_info.value.code is code
    assert exc_info.value.details["stderr"] == error
    assert kubectl.create_calls == 1
    assert sleeps == []
    assert not lock.held


def test_already_exists_from_kubectl_is_contention():
    kubectl = FakeKubectl()
    kubectl.create_error = ('Error from server (AlreadyExists): configmaps '
                            '"qualys-helm-install-lock" already exists')
    lock = make_lock(kubectl, attempts=2)

    assert lock.try_acquire(owner="node-a") is False
    assert kubectl.create_calls == 2


@pytest.mark.parametrize("budget,expected_calls", [(0, 1), (10, 3), (12, 3), (30, 7)])
def test_timeout_budget_overrides_attempts(budget, expected_calls):
    kubectl = FakeKubectl()
    kubectl.put_lock("qualys-helm-install-lock", "kube-system", "node-b", NOW)
    sleeps = []
    lock = make_lock(kubectl, attempts=3, retry_delay=5, sleep=sleeps.append)

    assert lock.try_acquire(owner="node-a", timeout_budget=budget) is False
    assert kubectl.create_calls == expected_calls
    assert sum(sleeps) <= budget


def test_release_deletes_when_record_cannot_be_read():
    kubectl = FakeKubectl()
    lock = make_lock(kubectl)
    lock.try_acquire(owner="node-a")
    kubectl.get_error = "Unable to connect to the server: net/http: TLS handshake timeout"

    lock.release()

    assert kubectl.delete_calls == 1
    assert not lock.held
    assert kubectl.configmaps == {}


def test_release_skips_delete_when_record_is_gone():
    kubectl = FakeKubectl()
    lock = make_lock(kubectl)
    lock.try_acquire(owner="node-a")
    kubectl.configmaps.clear()

    lock.release()

    assert kubectl.delete_calls == 0


def test_stale_lock_is_reclaimed_then_acquirable():
    kubectl = FakeKubectl()
    kubectl.put_lock("qualys-helm-install-lock", "kube-system", "crashed-node",
                     NOW - timedelta(seconds=901))
    lock = make_lock(kubectl, stale_seconds=900)

    assert lock.try_acquire(owner="node-a") is False
    assert lock.reclaim_if_stale(now=NOW) is True
    assert lock.try_acquire(owner="node-a") is True
    assert lock.lock_info()["owner"] == "node-a"


def test_fresh_lock_is_not_reclaimed():
    kubectl = FakeKubectl()
    kubectl.put_lock("qualys-helm-install-lock", "kube-system", "node-b",
                     NOW - timedelta(seconds=600))
    lock = make_lock(kubectl)

    assert lock.reclaim_if_stale(max_age=900, now=NOW) is False
    assert lock.lock_info()["owner"] == "node-b"


def test_reclaim_without_lock_is_noop():
    assert make_lock(FakeKubectl()).reclaim_if_stale(now=NOW) is False


def test_janitor_manifest_is_valid_cronjob():
    lock = make_lock(FakeKubectl(), stale_seconds=600, janitor_schedule="*/10 * * * *")
    doc = yaml.safe_load(lock.render_janitor_manifest())

    assert doc["apiVersion"] == "batch/v1"
    assert doc["kind"] == "CronJob"
    assert doc["metadata"]["name"] == "clear-stale-qualys-lock"
    assert doc["spec"]["schedule"] == "*/10 * * * *"
    assert doc["spec"]["successfulJobsHistoryLimit"] == 1

    container = doc["spec"]["jobTemplate"]["spec"]["template"]["spec"]["containers"][0]
    assert container["image"].startswith("bitnami/kubectl")
    script = container["command"][-1]
    assert 'LOCK_NAME="qualys-helm-install-lock"' in script
    assert "TIMEOUT_SECONDS=600" in script
    assert "{.metadata.creationTimestamp}" in script


def test_janitor_is_registered_only_once():
    kubectl = FakeKubectl()
    lock = make_lock(kubectl)

    assert lock.ensure_janitor() is True
    assert lock.ensure_janitor() is False
    assert list(kubectl.cronjobs) == [("kube-system", "clear-stale-qualys-lock")]


def test_holder_description_and_timestamps():
    assert "node-b" in describe_holder({"owner": "node-b", "pid": "1", "timestamp": "t"})
    assert describe_holder(None) == "unknown holder"
    assert parse_timestamp("2025-03-01T12:00:00Z") == NOW
    assert parse_timestamp("garbage") is None
