"""Bounded-concurrency dispatch of a per-node operation."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field

from loguru import logger

from salter.exceptions import DispatchError
from salter.types import Node


@dataclass(slots=True)
class DispatchResult:
    """Outcome of ``run_all``: every node that raised, keyed by name."""

    total: int = 0
    failures: dict[str, BaseException] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def succeeded(self) -> int:
        return self.total - len(self.failures)

    def raise_for_failures(self) -> None:
        if self.failures:
            raise DispatchError(self.failures)


def run_all(
    nodes: Iterable[Node],
    concurrency: int,
    fn: Callable[[Node], object],
) -> DispatchResult:
    """Call ``fn`` once per node with at most ``concurrency`` calls in flight.

    Blocks until every node has been processed. A failure on one node
    never stops the others; failures are collected in the result.
    """
    if concurrency < 1:
        raise ValueError(f"concurrency must be >= 1, got {concurrency}")

    targets = list(nodes)
    result = DispatchResult(total=len(targets))
    if not targets:
        return result

    with ThreadPoolExecutor(max_workers=min(concurrency, len(targets)), thread_name_prefix="salter") as pool:
        futures = {pool.submit(fn, node): node for node in targets}
        for future in as_completed(futures):
            node = futures[future]
            if (exc := future.exception()) is not None:
                logger.error(f"{node.name}: {exc}")
                result.failures[node.name] = exc

    return result


__all__ = [
    "DispatchResult",
    "run_all",
]
