import threading

from wac.workqueue import WorkQueue


def test_triggers_coalesce_while_queued():
    q = WorkQueue()
    assert q.add("default/web") is True
    assert q.add("default/web") is False
    q.add("default/api")
    assert len(q) == 2


def test_key_added_during_processing_is_requeued_once():
    q = WorkQueue()
    q.add("default/web")
    key = q.get(timeout=0)
    assert key == "default/web"
    assert q.in_flight(key)

    assert q.add(key) is True
    assert q.add(key) is False
    # not handed out again while in flight
    assert q.get(timeout=0) is None

    q.done(key)
    assert len(q) == 1
    assert q.get(timeout=0) == key
    q.done(key)
    assert len(q) == 0


def test_shutdown_wakes_waiting_workers():
    q = WorkQueue()
    got = []
    t = threading.Thread(target=lambda: got.append(q.get(timeout=5)))
    t.start()
    q.shutdown()
    t.join(timeout=2)
    assert got == [None]
    assert q.add("default/web") is False


def test_controller_workers_drain_queue(cp, store):
    from conftest import create, make_spec

    spec = create(store, make_spec(min_replicas=1, max_replicas=1))
    cp.controller.trigger(spec.key)
    cp.controller.trigger(spec.key)
    assert len(cp.controller.queue) == 1

    worker = threading.Thread(target=cp.controller.run_worker)
    worker.start()
    try:
        pause = threading.Event()
        for _ in range(50):
            if store.list_instances(spec.key):
                break
            pause.wait(0.05)
    finally:
        cp.controller.stop()
        worker.join(timeout=2)
    assert len(store.list_instances(spec.key)) == 1
