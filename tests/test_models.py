from unittest import mock

from mcpsseproxy.models import GatewayInstance, SessionInfo


def test_instance_port_from_url():
    inst = GatewayInstance(process=None, internal_url="http://127.0.0.1:12345")
    assert inst.port() == 12345


def test_instance_port_missing():
    inst = GatewayInstance(process=None, internal_url="http://127.0.0.1")
    assert inst.port() is None


def test_instance_port_invalid():
    inst = GatewayInstance(process=None, internal_url="http://127.0.0.1:notaport")
    assert inst.port() is None


def test_instance_starts_without_sessions():
    inst = GatewayInstance(process=None, internal_url="http://127.0.0.1:1")
    assert inst.sessions == 0
    assert inst.cancel is None


def test_instances_compare_by_identity():
    a = GatewayInstance(process=None, internal_url="http://127.0.0.1:1", start_time=1.0)
    b = GatewayInstance(process=None, internal_url="http://127.0.0.1:1", start_time=1.0)
    assert a == a
    assert (a == b) is False


def test_session_created_equals_last_used():
    inst = GatewayInstance(process=None, internal_url="http://127.0.0.1:1")
    session = SessionInfo(inst)
    assert session.last_used == session.created_at
    assert session.instance is inst


def test_session_touch_updates_last_used():
    inst = GatewayInstance(process=None, internal_url="http://127.0.0.1:1")
    with mock.patch("mcpsseproxy.models.time.monotonic", return_value=50.0):
        session = SessionInfo(inst)
    with mock.patch("mcpsseproxy.models.time.monotonic", return_value=75.0):
        session.touch()
    assert session.created_at == 50.0
    assert session.last_used == 75.0