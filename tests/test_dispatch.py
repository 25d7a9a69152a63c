from __future__ import annotations

import threading
import time

import pytest

from fakes import make_node
from salter.dispatch import DispatchResult, run_all
from salter.exceptions import DispatchError
from salter.types import Node

pytestmark = [pytest.mark.timeout(30)]


class TestRunAll:
    def test_failures_do_not_stop_others(self):
        nodes = [make_node(f"n{i}") for i in range(10)]
        processed: list[str] = []
        lock = threading.Lock()

        def fn(node: Node) -> None:
            if node.name in ("n3", "n7"):
                raise RuntimeError(f"{node.name} exploded")
            with lock:
                processed.append(node.name)

        result = run_all(nodes, 4, fn)

        assert result.total == 10
        assert set(result.failures) == {"n3", "n7"}
        assert str(result.failures["n3"]) == "n3 exploded"
        assert sorted(processed) == sorted(f"n{i}" for i in range(10) if i not in (3, 7))
        assert result.succeeded == 8
        assert not result.ok

    def test_concurrency_is_bounded(self):
        in_flight = 0
        peak = 0
        lock = threading.Lock()

        def fn(node: Node) -> None:
            nonlocal in_flight, peak
            with lock:
                in_flight += 1
                peak = max(peak, in_flight)
            time.sleep(0.02)
            with lock:
                in_flight -= 1

        result = run_all([make_node(f"n{i}") for i in range(12)], 3, fn)
        assert result.ok
        assert 1 <= peak <= 3

    def test_runs_in_parallel(self):
        barrier = threading.Barrier(4)

        def fn(node: Node) -> None:
            barrier.wait(timeout=5)

        assert run_all([make_node(f"n{i}") for i in range(4)], 4, fn).ok

    def test_every_node_called_once(self):
        calls: list[str] = []
        lock = threading.Lock()

        def fn(node: Node) -> None:
            with lock:
                calls.append(node.name)

        run_all([make_node(f"n{i}") for i in range(20)], 5, fn)
        assert sorted(calls) == sorted(f"n{i}" for i in range(20))

    def test_empty(self):
        result = run_all([], 3, lambda node: None)
        assert result == DispatchResult(total=0)
        assert result.ok

    @pytest.mark.parametrize("concurrency", [0, -1])
    def test_invalid_concurrency(self, concurrency: int):
        with pytest.raises(ValueError, match="concurrency must be >= 1"):
            run_all([make_node("a")], concurrency, lambda node: None)


class TestDispatchResult:
    def test_raise_for_failures(self):
        result = DispatchResult(total=3, failures={"b": RuntimeError("x"), "a": RuntimeError("y")})
        with pytest.raises(DispatchError, match=r"2 node\(s\) failed: a, b") as exc_info:
            result.raise_for_failures()
        assert set(exc_info.value.failures) == {"a", "b"}

    def test_no_failures_is_silent(self):
        DispatchResult(total=3).raise_for_failures()
