"""
待处理链接表测试
"""

import threading

from qbittorrent_bot.pending_links import PendingLinkStore


def test_last_link_wins():
    store = PendingLinkStore()
    assert store.set(1, "first") is None
    assert store.set(1, "second") == "first"
    assert store.get(1) == "second"
    assert len(store) == 1


def test_pop_removes_entry():
    store = PendingLinkStore()
    store.set(1, "link")
    assert store.pop(1) == "link"
    assert store.pop(1) is None
    assert 1 not in store


def test_requesters_are_independent():
    store = PendingLinkStore()
    store.set(1, "a")
    store.set(2, "b")
    store.pop(1)
    assert store.get(2) == "b"
    store.clear()
    assert len(store) == 0


def test_concurrent_writers_leave_one_entry():
    store = PendingLinkStore()

    def writer(n):
        for i in range(200):
            store.set(7, f"link-{n}-{i}")

    threads = [threading.Thread(target=writer, args=(n,)) for n in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(store) == 1
    assert store.get(7).startswith("link-")
