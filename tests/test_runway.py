from unittest.mock import MagicMock

import pytest
import requests

from promo_worker.errors import ProviderConfigError, TransientProviderError
from promo_worker.config import Settings
from promo_worker.runway import (
    RunwayClient,
    clamp_duration,
    map_ratio,
    task_failure_reason,
    task_output_url,
)


def _response(status_code=200, json_data=None, text=""):
    resp = MagicMock()
    resp.status_code = status_code
    resp.text = text
    resp.json.return_value = json_data or {}
    return resp


@pytest.fixture
def session():
    return MagicMock(spec=requests.Session)


@pytest.fixture
def client(settings, session):
    return RunwayClient(settings, session=session)


def test_map_ratio():
    assert map_ratio("16:9") == "1280:720"
    assert map_ratio("9:16") == "720:1280"
    assert map_ratio("960:960") == "960:960"
    assert map_ratio("7:3") == "1280:720"
    assert map_ratio(None, default="720:1280") == "720:1280"


def test_clamp_duration():
    assert clamp_duration(1) == 2
    assert clamp_duration(30) == 10
    assert clamp_duration("7") == 7
    assert clamp_duration("abc") == 5


def test_task_helpers():
    assert task_output_url({"output": ["https://r/1.mp4", "https://r/2.mp4"]}) == "https://r/1.mp4"
    assert task_output_url({"output": []}) is None
    assert task_failure_reason({"failure": "Invalid aspect ratio"}) == "Invalid aspect ratio"
    assert task_failure_reason({}) == "Video generation failed"


def test_create_sends_version_header(client, session):
    session.request.return_value = _response(200, {"id": "task_1"})

    task = client.create_image_to_video("https://img/x.png", "slow pan", ratio="1280:720", duration=5)

    assert task == {"id": "task_1", "status": "PENDING"}
    args, kwargs = session.request.call_args
    assert args == ("POST", "https://api.dev.runwayml.com/v1/image_to_video")
    assert kwargs["headers"]["Authorization"] == "Bearer rw-key"
    assert kwargs["headers"]["X-Runway-Version"] == "2024-11-06"
    assert kwargs["json"]["promptImage"] == "https://img/x.png"


def test_missing_key(session):
    with pytest.raises(ProviderConfigError):
        RunwayClient(Settings(), session=session).get_task("task_1")


def test_wait_for_task_until_terminal(client, session):
    session.request.side_effect = [
        _response(200, {"id": "task_1", "status": "PENDING"}),
        _response(200, {"id": "task_1", "status": "RUNNING"}),
        _response(200, {"id": "task_1", "status": "SUCCEEDED", "output": ["https://r/1.mp4"]}),
    ]
    sleeps = []

    task = client.wait_for_task("task_1", interval=5, max_attempts=10, sleep=sleeps.append)

    assert task["status"] == "SUCCEEDED"
    assert sleeps == [5, 5, 5]


def test_wait_for_task_budget_exhausted(client, session):
    session.request.return_value = _response(200, {"id": "task_1", "status": "RUNNING"})

    task = client.wait_for_task("task_1", interval=0, max_attempts=4, sleep=lambda _: None)

    assert task["status"] == "RUNNING"
    assert session.request.call_count == 4


def test_wait_for_task_tolerates_some_transient_errors(client, session):
    session.request.side_effect = [
        requests.exceptions.ConnectionError("reset"),
        _response(502, text="bad gateway"),
        _response(200, {"id": "task_1", "status": "FAILED", "failure": "moderation"}),
    ]

    task = client.wait_for_task("task_1", interval=0, max_attempts=5, sleep=lambda _: None)

    assert task["status"] == "FAILED"


def test_wait_for_task_gives_up_after_repeated_errors(client, session):
    session.request.side_effect = requests.exceptions.ConnectionError("down")

    with pytest.raises(TransientProviderError):
        client.wait_for_task("task_1", interval=0, max_attempts=10, sleep=lambda _: None)
    # status_max_retries (3) tolerated, the 4th consecutive error is raised
    assert session.request.call_count == 4
