"""
测试调用参数与环境变量解析
"""

import pytest
from pydantic import ValidationError

from qcs_sensor_installer.collectors.models import SourceKind
from qcs_sensor_installer.config import (
    ClusterInstallConfig,
    HostInstallConfig,
    InstallerSettings,
    parse_bool,
    parse_optional,
    parse_options,
)
from qcs_sensor_installer.utils.errors import ConfigError, InstallerErrorCode


def host(location="/opt/qualys", pod_url="NONE", options="NONE", force="false"):
    return HostInstallConfig.from_positional(location, "act", "cust", pod_url, options, force)


@pytest.mark.parametrize("value,expected", [
    ("true", True), ("TRUE", True), ("True", True),
    ("false", False), ("FALSE", False), (" false ", False),
])
def test_parse_bool(value, expected):
    assert parse_bool(value, "force_reinstall") is expected


@pytest.mark.parametrize("value", ["yes", "1", "", None])
def test_parse_bool_rejects_other_values(value):
    with pytest.raises(ConfigError) as exc_info:
        parse_bool(value, "force_reinstall")
    assert exc_info.value.code is InstallerErrorCode.INVALID_INPUT


def test_none_sentinel():
    assert parse_optional("NONE") is None
    assert parse_optional("none") is None
    assert parse_optional("  ") is None
    assert parse_optional("https://pod") == "https://pod"


def test_options_are_split_like_a_shell():
    assert parse_options("--registry-sensor --tag 'a b'") == ["--registry-sensor", "--tag", "a b"]
    assert parse_options("NONE") == []


def test_unbalanced_quotes_are_invalid_input():
    with pytest.raises(ConfigError) as exc_info:
        parse_options("--tag 'oops")
    assert exc_info.value.code is InstallerErrorCode.INVALID_INPUT


# === 主机参数 ===

def test_registry_source():
    config = host(location="DockerHub", pod_url="https://pod.example.com")
    assert config.source_kind is SourceKind.REGISTRY
    assert config.pod_url == "https://pod.example.com"


def test_registry_requires_pod_url():
    with pytest.raises(ConfigError) as exc_info:
        host(location="dockerhub")
    assert exc_info.value.code is InstallerErrorCode.CONFIG_ERROR


def test_empty_credentials_are_invalid_input():
    with pytest.raises(ConfigError) as exc_info:
        HostInstallConfig.from_positional("/opt/q", " ", "cust", "NONE", "NONE", "false")
    assert exc_info.value.code is InstallerErrorCode.INVALID_INPUT


def test_config_is_immutable():
    config = host()
    with pytest.raises(ValidationError):
        config.activation_id = "other"


@pytest.mark.parametrize("location,expected", [
    ("/opt/qualys", "/opt/qualys/QualysContainerSensor.tar.xz"),
    ("/opt/qualys/", "/opt/qualys/QualysContainerSensor.tar.xz"),
    ("/opt/qualys/custom.tar.xz", "/opt/qualys/custom.tar.xz"),
    ("https://cdn.example.com/qcs", "https://cdn.example.com/qcs/QualysContainerSensor.tar.xz"),
    ("https://b.s3.amazonaws.com/QualysContainerSensor.tar.xz?X-Amz-Signature=abc",
     "https://b.s3.amazonaws.com/QualysContainerSensor.tar.xz?X-Amz-Signature=abc"),
    ("https://b.example.com/dir/?sig=1", "https://b.example.com/dir/QualysContainerSensor.tar.xz?sig=1"),
    ("C:\\qualys", "C:\\qualys/QualysContainerSensor.tar.xz"),
])
def test_archive_location(location, expected):
    assert host(location=location).archive_location == expected


# === 集群参数 ===

def test_cluster_defaults():
    config = ClusterInstallConfig.from_positional("--set a=b --set c=d")
    assert config.chart_args == ["--set", "a=b", "--set", "c=d"]
    assert config.force_reinstall is False
    assert config.generate is False


def test_cluster_generate_mode():
    config = ClusterInstallConfig.from_positional("--set a=b", "TRUE", "generate")
    assert config.generate and config.force_reinstall


def test_cluster_unknown_mode():
    with pytest.raises(ConfigError) as exc_info:
        ClusterInstallConfig.from_positional("--set a=b", "false", "apply")
    assert exc_info.value.code is InstallerErrorCode.INVALID_INPUT


# === 环境变量 ===

def test_settings_defaults():
    settings = InstallerSettings.from_env({})
    assert settings.lock_name == "qualys-helm-install-lock"
    assert settings.lock_namespace == "kube-system"
    assert settings.lock_stale_seconds == 900
    assert settings.helm_release == "qualys-tc"
    assert settings.verify_timeout == 30


def test_settings_from_env():
    settings = InstallerSettings.from_env({
        "QCS_VERIFY_TIMEOUT": "90",
        "QCS_HELM_TIMEOUT": "15m",
        "QCS_LOG_LEVEL": "debug",
        "QCS_WORK_DIR": "~/qcs",
        "QCS_LOCK_ATTEMPTS": "",
        "UNRELATED": "x",
    })
    assert settings.verify_timeout == 90
    assert settings.helm_timeout == "15m"
    assert settings.log_level == "DEBUG"
    assert settings.lock_attempts == 3
    assert not str(settings.work_path).startswith("~")


@pytest.mark.parametrize("key,value", [
    ("QCS_FETCH_ATTEMPTS", "0"),
    ("QCS_HELM_TIMEOUT", "ten minutes"),
    ("QCS_LOG_LEVEL", "chatty"),
    ("QCS_VERIFY_TIMEOUT", "soon"),
])
def test_invalid_settings_are_config_errors(key, value):
    with pytest.raises(ConfigError) as exc_info:
        InstallerSettings.from_env({key: value})
    assert exc_info.value.code is InstallerErrorCode.CONFIG_ERROR
