import dataclasses
import signal
import subprocess
import sys
import time
from datetime import timedelta

import pytest

from mcpsseproxy.config import default_process_config
from mcpsseproxy.manager import Manager, SessionError
from mcpsseproxy.models import GatewayInstance

KEY = "npx -y @upstash/context7-mcp@latest"


def _config(**overrides):
    return dataclasses.replace(default_process_config(), **overrides)


def _instance(port=12345, process=None, **kwargs):
    return GatewayInstance(
        process=process, internal_url=f"http://127.0.0.1:{port}", **kwargs
    )


@pytest.fixture
def processes():
    started = []

    def spawn(code="import time; time.sleep(30)", **kwargs):
        proc = subprocess.Popen([sys.executable, "-c", code], **kwargs)
        started.append(proc)
        return proc

    yield spawn
    for proc in started:
        if proc.poll() is None:
            proc.kill()
        proc.wait()
        if proc.stdout:
            proc.stdout.close()


def test_create_and_get_session():
    manager = Manager()
    inst = _instance()
    session = manager.create_session("abc", inst)
    assert manager.get_session("abc") is session
    assert session.instance is inst
    assert inst.sessions == 1


def test_duplicate_session_rejected():
    manager = Manager()
    inst = _instance()
    manager.create_session("abc", inst)
    with pytest.raises(SessionError, match="session already exists"):
        manager.create_session("abc", inst)
    assert inst.sessions == 1


def test_total_session_limit():
    manager = Manager(_config(max_total_sessions=1))
    manager.create_session("a", _instance())
    with pytest.raises(SessionError, match="maximum total sessions reached"):
        manager.create_session("b", _instance())
    assert manager.get_session("b") is None


def test_per_instance_session_limit():
    manager = Manager(_config(max_sessions=1))
    inst = _instance()
    manager.create_session("a", inst)
    with pytest.raises(SessionError, match="maximum sessions per instance reached"):
        manager.create_session("b", inst)
    manager.create_session("c", _instance())
    assert manager.get_session("c") is not None and manager.get_session("b") is None


def test_touch_session():
    manager = Manager()
    assert manager.touch_session("missing") is False
    session = manager.create_session("abc", _instance())
    session.last_used = 0.0
    assert manager.touch_session("abc") is True
    assert session.last_used > 0.0


def test_cleanup_expired_sessions_only_idle_ones():
    manager = Manager(_config(session_timeout=timedelta(seconds=10)))
    idle = _instance()
    busy = _instance()
    manager.create_session("idle", idle)
    manager.create_session("busy", busy)
    manager.create_session("fresh", _instance())
    idle.sessions = 0
    manager.get_session("idle").last_used = time.monotonic() - 100
    manager.get_session("busy").last_used = time.monotonic() - 100
    manager.cleanup_expired_sessions()
    assert manager.get_session("idle") is None
    assert manager.get_session("busy") is not None
    assert manager.get_session("fresh") is not None


def test_instance_registry():
    manager = Manager()
    inst = _instance()
    assert manager.get_instance(KEY) is None
    manager.add_instance(KEY, inst)
    assert manager.get_instance(KEY) is inst
    manager.remove_instance(KEY)
    assert manager.get_instance(KEY) is None


def test_port_allocation_roundtrip():
    manager = Manager()
    port = manager.get_port()
    assert 10000 <= port <= 65535
    assert manager.port_manager.in_use(port) is True
    manager.release_port(port)
    assert manager.port_manager.in_use(port) is False


def test_terminate_instance_stops_process_and_cleans_up(processes):
    manager = Manager()
    port = manager.get_port()
    proc = processes()
    cancelled = []
    inst = _instance(port, proc, cancel=lambda: cancelled.append(True))
    manager.add_instance(KEY, inst)
    manager.create_session("s1", inst)
    manager.terminate_instance(KEY, inst)
    assert cancelled == [True]
    assert proc.poll() == -signal.SIGTERM
    assert manager.get_instance(KEY) is None
    assert manager.get_session("s1") is None
    assert inst.sessions == 0
    assert manager.port_manager.in_use(port) is False


def test_terminate_instance_kills_stubborn_process(processes):
    code = (
        "import signal, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); "
        "print('ready', flush=True); time.sleep(30)"
    )
    proc = processes(code, stdout=subprocess.PIPE)
    assert proc.stdout.readline().strip() == b"ready"
    manager = Manager(_config(graceful_timeout=timedelta(milliseconds=200)))
    inst = _instance(process=proc)
    manager.add_instance(KEY, inst)
    manager.terminate_instance(KEY, inst)
    assert proc.wait(timeout=5) == -signal.SIGKILL
    assert manager.get_instance(KEY) is None


def test_terminate_keeps_replacement_instance():
    manager = Manager()
    old = _instance()
    new = _instance(port=12346)
    manager.add_instance(KEY, new)
    manager.create_session("new-session", new)
    manager.terminate_instance(KEY, old)
    assert manager.get_instance(KEY) is new
    assert manager.get_session("new-session").instance is new


def test_cleanup_expired_processes():
    manager = Manager(_config(max_lifetime=timedelta(seconds=60)))
    old = _instance(start_time=time.monotonic() - 120)
    young = _instance(port=12346)
    manager.add_instance("old", old)
    manager.add_instance("young", young)
    manager.create_session("s-old", old)
    manager.cleanup_expired_processes()
    assert manager.get_instance("old") is None
    assert manager.get_instance("young") is young
    assert manager.get_session("s-old") is None


def test_start_runs_periodic_cleanup_and_shutdown(processes):
    manager = Manager(
        _config(
            max_lifetime=timedelta(seconds=0.2),
            cleanup_interval=timedelta(milliseconds=50),
        )
    )
    manager.add_instance("expiring", _instance())
    manager.start()
    try:
        deadline = time.monotonic() + 5
        while manager.get_instance("expiring") is not None and time.monotonic() < deadline:
            time.sleep(0.02)
        assert manager.get_instance("expiring") is None
    finally:
        proc = processes()
        manager.add_instance(KEY, _instance(process=proc))
        manager.shutdown()
    assert proc.poll() == -signal.SIGTERM
    assert manager.get_instance(KEY) is None