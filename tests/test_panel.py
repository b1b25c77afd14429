import json

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from errors import ConfigError, NotModified, RejectedError, TransientError
from models import Cipher, TrafficEntry, TrafficSnapshot, TransportOptions
from panel import CONFIG_PATH, PUSH_PATH, USERS_PATH, PanelClient


class FakeResponse:
    def __init__(self, status_code=200, body=None, headers=None, text=None):
        self.status_code = status_code
        self._body = body
        self.headers = CaseInsensitiveDict(headers or {})
        self.text = text if text is not None else json.dumps(body)

    def json(self):
        if self._body is None:
            raise ValueError("No JSON object could be decoded")
        return self._body


class FakeSession:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []
        self.headers = {}

    def request(self, method, url, **kwargs):
        self.requests.append((method, url, kwargs))
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def close(self):
        pass


CONFIG_BODY = {
    'server_port': 443,
    'cipher': '2022-blake3-aes-128-gcm',
    'server_key': 'c2VydmVyLWtleQ==',
    'base_config': {'push_interval': 30, 'pull_interval': 90},
}


def make_client(*responses, **kwargs):
    session = FakeSession(*responses)
    client = PanelClient('https://panel.example.com/', 7, 'node-token', session=session, **kwargs)
    return client, session


def test_fetch_config_parses_and_sends_node_params():
    transport = TransportOptions(fast_open=True)
    client, session = make_client(FakeResponse(body=CONFIG_BODY), transport=transport, timeout=3)

    config = client.fetch_config()
    assert config.listen_port == 443
    assert config.cipher is Cipher.AES_128_GCM
    assert config.push_interval == 30 and config.pull_interval == 90
    assert config.transport.fast_open

    method, url, kwargs = session.requests[0]
    assert (method, url) == ('GET', 'https://panel.example.com' + CONFIG_PATH)
    assert kwargs['params'] == {'node_id': '7', 'node_type': 'shadowsocks', 'token': 'node-token'}
    assert kwargs['timeout'] == 3


def test_fetch_config_rejects_zero_port():
    client, _ = make_client(FakeResponse(body=dict(CONFIG_BODY, server_port=0)))
    with pytest.raises(ConfigError):
        client.fetch_config()


def test_fetch_config_rejects_unknown_cipher():
    client, _ = make_client(FakeResponse(body=dict(CONFIG_BODY, cipher='rc4-md5')))
    with pytest.raises(ConfigError):
        client.fetch_config()


def test_etag_is_sent_back_and_304_raises_not_modified():
    client, session = make_client(
        FakeResponse(body={'users': [{'id': 1, 'uuid': 'u' * 36}]}, headers={'ETag': '"v1"'}),
        FakeResponse(status_code=304, text=''),
    )
    users = client.fetch_users()
    assert [(u.user_id, u.secret) for u in users] == [(1, 'u' * 36)]

    with pytest.raises(NotModified):
        client.fetch_users()
    assert session.requests[0][2]['headers'] == {}
    assert session.requests[1][2]['headers'] == {'If-None-Match': '"v1"'}


def test_fetch_users_skips_malformed_entries():
    client, _ = make_client(FakeResponse(body={'users': [{'id': 'x'}, {'id': 2, 'uuid': 'abc'}]}))
    assert [u.user_id for u in client.fetch_users()] == [2]


def test_fetch_users_empty_list():
    client, _ = make_client(FakeResponse(body={'users': []}))
    assert client.fetch_users() == []


def test_fetch_users_missing_field_is_transient():
    client, _ = make_client(FakeResponse(body={'data': []}))
    with pytest.raises(TransientError):
        client.fetch_users()


@pytest.mark.parametrize('status', [500, 502, 503, 408, 429])
def test_server_errors_are_transient(status):
    client, _ = make_client(FakeResponse(status_code=status, text='oops'))
    with pytest.raises(TransientError):
        client.fetch_config()


@pytest.mark.parametrize('status', [400, 401, 403, 404])
def test_client_errors_are_rejected(status):
    client, _ = make_client(FakeResponse(status_code=status, text='denied'))
    with pytest.raises(RejectedError) as excinfo:
        client.fetch_users()
    assert excinfo.value.status == status


@pytest.mark.parametrize('exc', [requests.ConnectionError('down'), requests.Timeout('slow')])
def test_network_failures_are_transient(exc):
    client, _ = make_client(exc)
    with pytest.raises(TransientError):
        client.fetch_config()


def test_invalid_json_is_transient():
    client, _ = make_client(FakeResponse(status_code=200, body=None, text='<html>'))
    with pytest.raises(TransientError):
        client.fetch_config()


def test_report_traffic_posts_payload_with_timeout_override():
    client, session = make_client(FakeResponse(body={'data': True}))
    snapshot = TrafficSnapshot([TrafficEntry(1, 10, 20), TrafficEntry(3, 0, 5)])

    client.report_traffic(snapshot, timeout=1.5)
    method, url, kwargs = session.requests[0]
    assert (method, url) == ('POST', 'https://panel.example.com' + PUSH_PATH)
    assert kwargs['json'] == {'1': [10, 20], '3': [0, 5]}
    assert kwargs['timeout'] == 1.5
    assert USERS_PATH not in url
