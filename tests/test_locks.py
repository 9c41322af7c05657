import threading
import time

from mcpsseproxy.locks import try_lock


def test_free_lock_is_acquired():
    lock = threading.Lock()
    assert try_lock(lock, 1.0) is True
    assert lock.locked() is True
    lock.release()


def test_held_lock_times_out():
    lock = threading.Lock()
    lock.acquire()
    started = time.monotonic()
    assert try_lock(lock, 0.05) is False
    assert time.monotonic() - started >= 0.04
    lock.release()


def test_lock_released_by_other_thread():
    lock = threading.Lock()
    lock.acquire()

    def release_later():
        time.sleep(0.05)
        lock.release()

    worker = threading.Thread(target=release_later)
    worker.start()
    assert try_lock(lock, 2.0) is True
    worker.join()
    assert lock.locked() is True
    lock.release()


def test_negative_timeout_behaves_as_immediate():
    lock = threading.Lock()
    lock.acquire()
    assert try_lock(lock, -1.0) is False
    lock.release()