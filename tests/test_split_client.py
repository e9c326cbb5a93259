from unittest import mock

import pytest
import requests

from autopromote.errors import SplitDeliveryError
from autopromote.split_client import SplitPublisher, post_split

INSTRUCTION = {
    "instruction_id": "exp-1:B",
    "experiment_id": "exp-1",
    "winner": "B",
    "variant_ref": "deploy_def",
    "variant_b_percentage": 100.0,
    "issued_at": 1000000.0,
}


def _response(payload=None, status=200):
    resp = mock.Mock()
    resp.content = b"{}" if payload is not None else b""
    resp.json.return_value = payload
    if status >= 400:
        resp.raise_for_status.side_effect = requests.HTTPError(f"{status} error")
    return resp


def test_post_split_sends_instruction():
    with mock.patch("autopromote.split_client.requests.post", return_value=_response({"acknowledged": True})) as post:
        reply = post_split(INSTRUCTION, "http://config-store:8080/", timeout=5)
    assert reply == {"acknowledged": True}
    post.assert_called_once_with("http://config-store:8080/splits", json=INSTRUCTION, timeout=5)


def test_empty_body_counts_as_acknowledged():
    publisher = SplitPublisher(base_url="http://config-store", attempts=1)
    with mock.patch("autopromote.split_client.requests.post", return_value=_response()):
        publisher.deliver(INSTRUCTION)


def test_retries_then_succeeds():
    sleeps = []
    publisher = SplitPublisher(base_url="http://config-store", attempts=3, sleep=sleeps.append)
    responses = [requests.ConnectionError("refused"), _response({"acknowledged": False}), _response({"acknowledged": True})]
    with mock.patch("autopromote.split_client.requests.post", side_effect=responses) as post:
        publisher.deliver(INSTRUCTION)
    assert post.call_count == 3
    assert len(sleeps) == 2


def test_gives_up_after_attempts():
    publisher = SplitPublisher(base_url="http://config-store", attempts=2, sleep=lambda _: None)
    with mock.patch("autopromote.split_client.requests.post", return_value=_response({}, status=503)):
        with pytest.raises(SplitDeliveryError):
            publisher.deliver(INSTRUCTION)


def test_no_config_store_applies_locally():
    publisher = SplitPublisher(base_url="")
    with mock.patch("autopromote.split_client.requests.post") as post:
        publisher.deliver(INSTRUCTION)
    post.assert_not_called()
