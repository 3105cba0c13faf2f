"""Dependency-ordered parallel execution of install work.

Nodes are ``(kind, name)`` pairs; each names the prerequisites that must
succeed before it may start. Ready nodes run on a thread pool. Callers bound
the fetch and build phases separately through :meth:`InstallScheduler.fetch_slot`
and :meth:`InstallScheduler.build_slot`.
"""
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Hashable, Iterable, Iterator, List, Optional, Set

from constants import Constants
from errors import DependencyCycle

from builder.process import CancelToken

logger = logging.getLogger(__name__)

_WAIT_POLL_SEC = 0.2
CANCELLED = "cancelled"
_NOT_RUN = object()


@dataclass
class ScheduleResult:
    """Outcome of one scheduler run."""
    results: Dict[Hashable, Any] = field(default_factory=dict)
    failures: Dict[Hashable, BaseException] = field(default_factory=dict)
    skipped: Dict[Hashable, str] = field(default_factory=dict)
    cancelled: bool = False
    timed_out: bool = False


class InstallScheduler:
    """Run node work in dependency order with bounded concurrency."""

    def __init__(
        self,
        *,
        fetch_concurrency: Optional[int] = None,
        build_concurrency: Optional[int] = None,
        cancel: Optional[CancelToken] = None,
        timeout: Optional[float] = None,
    ) -> None:
        if fetch_concurrency is None:
            fetch_concurrency = Constants.FETCH_CONCURRENCY
        if build_concurrency is None:
            build_concurrency = Constants.BUILD_CONCURRENCY
        self.fetch_concurrency = max(1, fetch_concurrency)
        self.build_concurrency = max(1, build_concurrency)
        self._fetch_semaphore = threading.BoundedSemaphore(self.fetch_concurrency)
        self._build_semaphore = threading.BoundedSemaphore(self.build_concurrency)
        self.cancel = cancel or CancelToken()
        self.timeout = timeout

    @contextmanager
    def fetch_slot(self) -> Iterator[None]:
        with self._fetch_semaphore:
            yield

    @contextmanager
    def build_slot(self) -> Iterator[None]:
        with self._build_semaphore:
            yield

    def run(
        self,
        prerequisites: Dict[Hashable, Iterable[Hashable]],
        work: Callable[[Hashable], Any],
    ) -> ScheduleResult:
        """Execute ``work(node)`` for every node once its prerequisites succeeded.

        A failed node marks every node depending on it (transitively) as
        skipped; unrelated nodes continue. Once cancelled, or after
        ``timeout`` seconds, nothing new starts and running build steps are
        terminated through the cancel token.
        """
        result = ScheduleResult()
        waiting: Dict[Hashable, Set[Hashable]] = {}
        dependents: Dict[Hashable, List[Hashable]] = {node: [] for node in prerequisites}
        for node, prereqs in prerequisites.items():
            needed = {p for p in prereqs if p in prerequisites and p != node}
            waiting[node] = needed
            for prereq in needed:
                dependents[prereq].append(node)

        deadline = time.monotonic() + self.timeout if self.timeout else None
        futures: Dict[Future, Hashable] = {}
        workers = self.fetch_concurrency + self.build_concurrency

        def skip_dependents(node: Hashable, reason: str) -> None:
            stack = list(dependents[node])
            while stack:
                current = stack.pop()
                if current in result.skipped or current not in waiting:
                    continue
                result.skipped[current] = reason
                del waiting[current]
                stack.extend(dependents[current])

        def guarded(node: Hashable) -> Any:
            if self.cancel.cancelled:
                return _NOT_RUN
            return work(node)

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="rockyard-install") as pool:

            def submit_ready() -> None:
                if self.cancel.cancelled:
                    return
                for node in sorted((n for n, p in waiting.items() if not p), key=str):
                    del waiting[node]
                    futures[pool.submit(guarded, node)] = node

            try:
                submit_ready()
                while futures:
                    poll = _WAIT_POLL_SEC
                    if deadline is not None:
                        poll = max(0.0, min(poll, deadline - time.monotonic()))
                    done, _ = wait(list(futures), timeout=poll, return_when=FIRST_COMPLETED)
                    if deadline is not None and not result.timed_out and time.monotonic() >= deadline:
                        logger.warning("Install timed out after %ss; cancelling", self.timeout)
                        result.timed_out = True
                        self.cancel.cancel()
                    for future in done:
                        node = futures.pop(future)
                        try:
                            value = future.result()
                        except Exception as exc:  # pylint: disable=broad-exception-caught
                            logger.error("Install of %s failed: %s", _label(node), exc)
                            result.failures[node] = exc
                            skip_dependents(node, f"dependency {_label(node)} failed")
                            continue
                        if value is _NOT_RUN:
                            result.skipped[node] = CANCELLED
                            continue
                        result.results[node] = value
                        for dependent in dependents[node]:
                            if dependent in waiting:
                                waiting[dependent].discard(node)
                    submit_ready()
            except BaseException:
                # Interrupted: stop running children before the pool waits on them.
                logger.warning("Install interrupted; cancelling running work")
                self.cancel.cancel()
                for future in futures:
                    future.cancel()
                raise

        if self.cancel.cancelled:
            result.cancelled = True
            for node in list(waiting):
                result.skipped[node] = CANCELLED
                del waiting[node]
        elif waiting:
            # Only a cycle among prerequisites leaves nodes waiting.
            cycle = [_label(n) for n in sorted(waiting, key=str)]
            for node in list(waiting):
                result.failures[node] = DependencyCycle(cycle)
        return result


def _label(node: Hashable) -> str:
    if isinstance(node, tuple) and len(node) == 2:
        kind, name = node
        return f"{getattr(kind, 'value', kind)}:{name}"
    return str(node)
