"""
测试版本检查
"""

from unittest.mock import MagicMock

import pytest
import requests

from qcs_sensor_installer.collectors.version_oracle import VersionOracle, parse_tag_digest


def session_returning(payload=None, error=None):
    session = MagicMock(spec=requests.Session)
    if error is not None:
        session.get.side_effect = error
    else:
        response = MagicMock()
        response.json.return_value = payload
        response.raise_for_status.return_value = None
        session.get.return_value = response
    return session


def test_digest_from_hub_tag_metadata():
    session = session_returning({"name": "latest", "digest": "sha256:abc"})
    oracle = VersionOracle(session=session)

    assert oracle.remote_identity() == "sha256:abc"
    session.get.assert_called_once()
    assert session.get.call_args.args[0].endswith("/qualys/qcs-sensor/tags/latest")


def test_remote_identity_is_fetched_once():
    session = session_returning({"digest": "sha256:abc"})
    oracle = VersionOracle(session=session)

    for _ in range(3):
        oracle.is_outdated("sha256:old")

    assert session.get.call_count == 1


@pytest.mark.parametrize("error", [
    requests.ConnectionError("offline"),
    requests.Timeout("slow"),
    requests.HTTPError("503"),
])
def test_fetch_failure_means_not_outdated(error):
    oracle = VersionOracle(session=session_returning(error=error))

    assert oracle.remote_identity() is None
    assert oracle.is_outdated("sha256:old") is False


def test_invalid_json_means_not_outdated():
    session = session_returning()
    session.get.return_value.json.side_effect = ValueError("not json")

    assert VersionOracle(session=session).is_outdated("sha256:old") is False


def test_unknown_running_identity_skips_remote_lookup():
    fetcher = MagicMock(return_value="sha256:new")
    oracle = VersionOracle(fetcher=fetcher)

    assert oracle.is_outdated(None) is False
    fetcher.assert_not_called()


def test_same_and_different_identity():
    oracle = VersionOracle(fetcher=lambda: "sha256:new")

    assert oracle.is_outdated("sha256:new") is False
    assert oracle.is_outdated("sha256:old") is True


@pytest.mark.parametrize("payload,expected", [
    ({"digest": "sha256:top", "images": [{"digest": "sha256:img"}]}, "sha256:top"),
    ({"images": [{"digest": "sha256:img"}]}, "sha256:img"),
    ({"images": []}, None),
    ({}, None),
    ([], None),
])
def test_parse_tag_digest(payload, expected):
    assert parse_tag_digest(payload) == expected
