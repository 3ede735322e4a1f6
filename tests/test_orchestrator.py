import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from conftest import FakeExecutor, FakeLimiter, ok_outcome
from coderunner.core.errors import InvalidInput, Overloaded, UnknownLanguage
from coderunner.core.models import ResultKind, Submission
from coderunner.services.orchestrator import Orchestrator

pytestmark = pytest.mark.unit


def _orch(settings, registry, executor, limiter=None, **overrides):
    s = settings.model_copy(update=overrides) if overrides else settings
    return Orchestrator(s, registry, executor, limiter=limiter or FakeLimiter())


def _gate():
    gate = threading.Event()

    def hook(spec, cancel):
        assert gate.wait(10), "gate never opened"

    return gate, hook


def test_submit_returns_result(settings, registry, fake_executor):
    orch = _orch(settings, registry, fake_executor)
    try:
        res = orch.submit(Submission("python", "print('ok')"))
    finally:
        orch.shutdown()
    assert res.kind is ResultKind.SUCCESS
    assert res.stdout == "ok\n"
    assert res.runner_id == "runner-test"
    assert fake_executor.build_calls == ["python"]


def test_fifty_submissions_against_pool_ten_queue_twenty(settings, registry, fake_executor):
    gate, hook = _gate()
    orch = _orch(settings, registry, fake_executor, limiter=FakeLimiter(hook=hook), pool_size=10, queue_capacity=20)

    def _attempt(i):
        try:
            return orch.submit_async(Submission("python", f"print({i})"))
        except Overloaded as e:
            return e

    with ThreadPoolExecutor(max_workers=50) as callers:
        attempts = list(callers.map(_attempt, range(50)))

    futures = [a for a in attempts if not isinstance(a, Overloaded)]
    rejected = [a for a in attempts if isinstance(a, Overloaded)]
    assert len(futures) == 30
    assert len(rejected) == 20
    assert all(e.capacity == 30 for e in rejected)

    gate.set()
    results = [f.result(timeout=20) for f in futures]
    orch.shutdown()

    assert all(r.kind is ResultKind.SUCCESS for r in results)
    assert len({r.session_id for r in results}) == 30
    assert orch.stats()["counters"]["overloaded"] == 20
    assert fake_executor.build_calls == ["python"]


def test_slots_come_back_after_completion(settings, registry, fake_executor):
    orch = _orch(settings, registry, fake_executor, pool_size=1, queue_capacity=0)
    try:
        for i in range(3):
            assert orch.submit(Submission("python", f"print({i})")).kind is ResultKind.SUCCESS
    finally:
        orch.shutdown()


def test_unknown_language_does_no_sandbox_work(settings, registry, fake_executor):
    limiter = FakeLimiter()
    orch = _orch(settings, registry, fake_executor, limiter=limiter)
    try:
        with pytest.raises(UnknownLanguage):
            orch.submit(Submission("cobol-9000", "DISPLAY 'HI'."))
    finally:
        orch.shutdown()
    assert fake_executor.build_calls == []
    assert limiter.calls == []
    assert not orch.builder.builds


@pytest.mark.parametrize(
    "submission",
    [
        Submission("python", ""),
        Submission("python", "   \n"),
        Submission("python", "x" * 2000),
        Submission("python", "print(1)", stdin="y" * 2000),
        Submission("python", "print(1)", limits={"cpu_seconds": -1}),
        Submission("python", "print(1)", limits={"bogus": 1}),
    ],
)
def test_invalid_input_is_rejected(settings, registry, fake_executor, submission):
    orch = _orch(settings, registry, fake_executor)
    try:
        with pytest.raises(InvalidInput):
            orch.submit(submission)
    finally:
        orch.shutdown()
    assert fake_executor.build_calls == []


def test_overrides_are_clamped_before_running(settings, registry, fake_executor):
    limiter = FakeLimiter()
    orch = _orch(settings, registry, fake_executor, limiter=limiter)
    try:
        orch.submit(Submission("python", "print(1)", limits={"wall_timeout_seconds": 999, "cpu_seconds": 1}))
    finally:
        orch.shutdown()
    (call,) = limiter.calls
    assert call.limits.wall_timeout_seconds == 15.0
    assert call.limits.cpu_seconds == 1


def test_build_failure_becomes_a_result(settings, registry, tmp_path, build_failure):
    ex = FakeExecutor(tmp_path / "scratch", fail_with=build_failure)
    orch = _orch(settings, registry, ex)
    try:
        res = orch.submit(Submission("python", "print(1)"))
        again = orch.submit(Submission("python", "print(2)"))
    finally:
        orch.shutdown()
    assert res.kind is ResultKind.BUILD_FAILED
    assert res.phase == "build"
    assert "python3" in res.reason
    assert again.kind is ResultKind.BUILD_FAILED
    assert orch.stats()["in_flight"] == 0


def test_one_failure_does_not_touch_another(settings, registry, fake_executor):
    def hook(spec, cancel):
        if "boom" in spec.workdir.joinpath("main.py").read_text():
            raise RuntimeError("worker crashed")

    orch = _orch(settings, registry, fake_executor, limiter=FakeLimiter(hook=hook))
    try:
        bad = orch.submit_async(Submission("python", "boom"))
        good = orch.submit_async(Submission("python", "print('fine')"))
        bad_res, good_res = bad.result(10), good.result(10)
    finally:
        orch.shutdown()
    assert bad_res.kind is ResultKind.INTERNAL_ERROR
    assert good_res.kind is ResultKind.SUCCESS
    assert list((fake_executor.root / "python").iterdir()) == []


def test_cancel_queued_submission(settings, registry, fake_executor):
    gate, hook = _gate()
    limiter = FakeLimiter(hook=hook)
    orch = _orch(settings, registry, fake_executor, limiter=limiter, pool_size=1, queue_capacity=1)
    try:
        first = orch.submit_async(Submission("python", "print(1)"))
        second = orch.submit_async(Submission("python", "print(2)"))
        assert orch.cancel(second.session_id)
        gate.set()
        assert first.result(10).kind is ResultKind.SUCCESS
        res = second.result(10)
    finally:
        orch.shutdown()
    assert res.kind is ResultKind.CANCELLED
    assert res.reason == "cancelled while queued"
    assert len(limiter.calls) == 1
    assert not orch.cancel(second.session_id)


def test_cancel_running_submission(settings, registry, fake_executor):
    started = threading.Event()

    def hook(spec, cancel):
        stop = threading.Event()
        cancel.register(stop.set)
        started.set()
        assert stop.wait(10)
        return ok_outcome(exit_code=None, signal=9, cancelled=True)

    orch = _orch(settings, registry, fake_executor, limiter=FakeLimiter(hook=hook))
    try:
        fut = orch.submit_async(Submission("python", "while True: pass"))
        assert started.wait(10)
        assert orch.cancel(fut.session_id)
        res = fut.result(10)
    finally:
        orch.shutdown()
    assert res.kind is ResultKind.CANCELLED


def test_shutdown_stops_admission(settings, registry, fake_executor):
    orch = _orch(settings, registry, fake_executor)
    orch.shutdown()
    with pytest.raises(Overloaded):
        orch.submit(Submission("python", "print(1)"))


def test_stats_shape(settings, registry, fake_executor):
    orch = _orch(settings, registry, fake_executor)
    try:
        orch.submit(Submission("python", "print(1)"))
        st = orch.stats()
    finally:
        orch.shutdown()
    assert st["backend"] == "fake"
    assert st["pool_size"] == 2
    assert st["counters"]["admitted"] == 1
    assert st["counters"]["kind.success"] == 1
    assert st["builds"] == {"python": 1}


def test_stream_delivers_chunks_then_end_marker(settings, registry, fake_executor):
    orch = _orch(settings, registry, fake_executor)
    try:
        fut, sub = orch.stream(Submission("python", "print('ok')"))
        res = fut.result(10)
    finally:
        orch.shutdown()
    assert res.kind is ResultKind.SUCCESS
    assert sub.queue.get(timeout=5) == ("stdout", b"ok\n")
    assert sub.queue.get(timeout=5) is None
    assert sub.dropped == 0
