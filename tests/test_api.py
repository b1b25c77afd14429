import pytest

from api import create_app, fmt_bytes
from conftest import SECRET_A, SECRET_B, FakePanel, user
from controller import SyncController
from models import TrafficDelta


@pytest.fixture
def controller(engine, no_backoff):
    controller = SyncController(FakePanel(users=[[user(1, SECRET_A), user(2, SECRET_B)]]),
                                engine, retry=no_backoff)
    assert controller.start()
    yield controller
    controller.shutdown()


@pytest.fixture
def client(controller):
    return create_app(controller).test_client()


def test_health_ok_while_running(client):
    resp = client.get('/api/health')
    assert resp.status_code == 200
    assert resp.get_json()['status'] == 'ok'


def test_health_reports_stopped(controller, client):
    controller.shutdown()
    resp = client.get('/api/health')
    assert resp.status_code == 503
    assert resp.get_json()['status'] == 'stopped'


def test_status_includes_pending_traffic(controller, client):
    controller.accumulator.record(TrafficDelta(2, 2048, 0))
    data = client.get('/api/status').get_json()
    assert data['state'] == 'running'
    assert data['users'] == 2
    assert data['pending']['up_fmt'] == '2.00 KB'


def test_users_lists_applied_ids(client):
    assert client.get('/api/users').get_json() == {'count': 2, 'user_ids': [1, 2]}


def test_pending_traffic_does_not_drain(controller, client):
    controller.accumulator.record(TrafficDelta(1, 1, 2))
    first = client.get('/api/traffic/pending').get_json()
    second = client.get('/api/traffic/pending').get_json()
    assert first == second
    assert first['users'][0]['user_id'] == 1


def test_fmt_bytes():
    assert fmt_bytes(None) == '0.00 B'
    assert fmt_bytes(1536) == '1.50 KB'
