import threading
import time

from engines.caching import KeyedLocks


def test_same_key_is_serialized():
    locks = KeyedLocks()
    active = []
    overlaps = []

    def _work():
        with locks.hold("conversation-1"):
            active.append(1)
            if len(active) > 1:
                overlaps.append(True)
            time.sleep(0.01)
            active.pop()

    threads = [threading.Thread(target=_work) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert overlaps == []


def test_different_keys_do_not_block_each_other():
    locks = KeyedLocks()
    with locks.hold("a"):
        acquired = threading.Event()

        def _other():
            with locks.hold("b"):
                acquired.set()

        thread = threading.Thread(target=_other)
        thread.start()
        assert acquired.wait(timeout=1)
        thread.join()


def test_unused_locks_are_released():
    locks = KeyedLocks()
    with locks.hold("a"):
        assert len(locks) == 1
    assert len(locks) == 0
