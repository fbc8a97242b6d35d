from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Iterable, List, Optional, Sequence, TypeVar

log = logging.getLogger(__name__)

try:
    GATE_BATCH_SIZE = int(os.getenv("GATE_BATCH_SIZE", "8") or 8)
except ValueError:
    GATE_BATCH_SIZE = 8

T = TypeVar("T")
R = TypeVar("R")


@dataclass(frozen=True)
class GateResult(Generic[T, R]):
    item: T
    value: Optional[R] = None
    error: Optional[BaseException] = None
    stale: bool = False
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.skipped


def chunked(seq: Sequence[T], size: int) -> Iterable[Sequence[T]]:
    if size <= 0:
        size = 1
    for i in range(0, len(seq), size):
        yield seq[i : i + size]


class ConcurrencyGate:
    """Fixed-size FIFO batches, run strictly one after another.

    Every request in batch n settles (success or failure) before batch n+1 starts;
    inside a batch everything runs at once. ``invalidate`` marks a navigation:
    work already in flight still finishes but comes back ``stale``, and batches that
    had not started are skipped.
    """

    def __init__(self, batch_size: int = GATE_BATCH_SIZE) -> None:
        self.batch_size = max(1, batch_size)
        self._epoch = 0

    @property
    def epoch(self) -> int:
        return self._epoch

    def invalidate(self) -> int:
        self._epoch += 1
        log.info("gate.invalidate: epoch=%d", self._epoch)
        return self._epoch

    async def run(
        self,
        items: Sequence[T],
        worker: Callable[[T], Awaitable[R]],
        on_result: Optional[Callable[[GateResult[T, R]], Any]] = None,
    ) -> List[GateResult[T, R]]:
        started_epoch = self._epoch
        results: List[GateResult[T, R]] = []
        batches = list(chunked(list(items), self.batch_size))
        for index, batch in enumerate(batches):
            if self._epoch != started_epoch:
                log.info("gate.run: navigation detected; skipping batch=%d/%d", index + 1, len(batches))
                results.extend(GateResult(item=it, skipped=True, stale=True) for it in batch)
                continue
            log.debug("gate.run: batch=%d/%d size=%d", index + 1, len(batches), len(batch))
            results.extend(await asyncio.gather(*(self._settle(it, worker, on_result, started_epoch) for it in batch)))
        return results

    async def _settle(
        self,
        item: T,
        worker: Callable[[T], Awaitable[R]],
        on_result: Optional[Callable[[GateResult[T, R]], Any]],
        started_epoch: int,
    ) -> GateResult[T, R]:
        try:
            value = await worker(item)
            res: GateResult[T, R] = GateResult(item=item, value=value, stale=self._epoch != started_epoch)
        except Exception as exc:
            log.warning("gate.run: worker failed err=%r", exc)
            res = GateResult(item=item, error=exc, stale=self._epoch != started_epoch)
        if on_result is not None:
            try:
                on_result(res)
            except Exception as exc:
                log.error("gate.run: result callback failed err=%r", exc)
        return res
