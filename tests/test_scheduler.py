"""Tests for the install scheduler."""

import os
import threading
import time
from unittest.mock import patch

import pytest

import scheduler as scheduler_module
from builder.process import CancelToken, run_step
from constants import Constants
from errors import DependencyCycle
from scheduler import CANCELLED, InstallScheduler
from versioning.models import DependencyKind

RT = DependencyKind.RUNTIME


class TestOrdering:
    """Prerequisites finish before dependents start."""

    def test_dependencies_run_first(self):
        order = []
        lock = threading.Lock()

        def work(node):
            with lock:
                order.append(node)
            return node[1].upper()

        graph = {(RT, "app"): [(RT, "lib")], (RT, "lib"): [(RT, "base")], (RT, "base"): []}
        result = InstallScheduler().run(graph, work)

        assert order == [(RT, "base"), (RT, "lib"), (RT, "app")]
        assert result.results[(RT, "app")] == "APP"
        assert not result.failures and not result.skipped

    def test_independent_nodes_run_concurrently(self):
        active = []
        peak = []
        lock = threading.Lock()

        def work(node):
            with lock:
                active.append(node)
                peak.append(len(active))
            time.sleep(0.2)
            with lock:
                active.remove(node)

        graph = {(RT, f"p{i}"): [] for i in range(4)}
        InstallScheduler(fetch_concurrency=2, build_concurrency=2).run(graph, work)

        assert max(peak) > 1

    def test_build_slots_bound_concurrency(self):
        scheduler = InstallScheduler(fetch_concurrency=4, build_concurrency=1)
        inside = []
        peak = []
        lock = threading.Lock()

        def work(node):
            with scheduler.build_slot():
                with lock:
                    inside.append(node)
                    peak.append(len(inside))
                time.sleep(0.05)
                with lock:
                    inside.remove(node)

        scheduler.run({(RT, f"p{i}"): [] for i in range(5)}, work)

        assert max(peak) == 1

    def test_prerequisites_outside_the_graph_are_ignored(self):
        result = InstallScheduler().run({(RT, "app"): [(RT, "elsewhere")]}, lambda node: "ok")
        assert result.results == {(RT, "app"): "ok"}


class TestFailures:
    """Failures skip dependents only."""

    def test_failure_skips_transitive_dependents(self):
        def work(node):
            if node == (RT, "lib"):
                raise RuntimeError("boom")
            return "ok"

        graph = {
            (RT, "app"): [(RT, "mid")],
            (RT, "mid"): [(RT, "lib")],
            (RT, "lib"): [],
            (RT, "other"): [],
        }
        result = InstallScheduler().run(graph, work)

        assert isinstance(result.failures[(RT, "lib")], RuntimeError)
        assert result.skipped == {
            (RT, "mid"): "dependency runtime:lib failed",
            (RT, "app"): "dependency runtime:lib failed",
        }
        assert result.results == {(RT, "other"): "ok"}

    def test_cycle_is_reported(self):
        graph = {(RT, "a"): [(RT, "b")], (RT, "b"): [(RT, "a")]}
        result = InstallScheduler().run(graph, lambda node: "ok")

        assert set(result.failures) == {(RT, "a"), (RT, "b")}
        assert isinstance(result.failures[(RT, "a")], DependencyCycle)


class TestCancellation:
    """Cancel and timeout stop new work."""

    def test_cancel_marks_pending_nodes(self):
        token = CancelToken()

        def work(node):
            if node == (RT, "base"):
                token.cancel()
            return "ok"

        graph = {(RT, "base"): [], (RT, "app"): [(RT, "base")]}
        result = InstallScheduler(cancel=token).run(graph, work)

        assert result.cancelled
        assert result.skipped[(RT, "app")] == CANCELLED

    def test_timeout_cancels(self):
        token = CancelToken()

        def work(node):
            if node == (RT, "slow"):
                token.wait(5)
            return "ok"

        graph = {(RT, "slow"): [], (RT, "after"): [(RT, "slow")]}
        started = time.monotonic()
        result = InstallScheduler(cancel=token, timeout=0.3).run(graph, work)

        assert time.monotonic() - started < 4
        assert result.timed_out
        assert result.cancelled
        assert result.skipped[(RT, "after")] == CANCELLED

    def test_interrupt_terminates_running_build_steps(self, tmp_path):
        scheduler = InstallScheduler()
        started = threading.Event()
        real_wait = scheduler_module.wait
        calls = []

        def work(node):
            started.set()
            run_step(["sleep", "30"], cwd=str(tmp_path), env=dict(os.environ),
                     backend="command", log=[], cancel=scheduler.cancel)

        def interrupting_wait(futures, timeout=None, return_when=None):
            calls.append(1)
            if len(calls) == 1:
                started.wait(5)
                time.sleep(0.3)
                raise KeyboardInterrupt
            return real_wait(futures, timeout=timeout, return_when=return_when)

        begun = time.monotonic()
        with patch('scheduler.wait', side_effect=interrupting_wait):
            with pytest.raises(KeyboardInterrupt):
                scheduler.run({(RT, "slow"): []}, work)

        assert scheduler.cancel.cancelled
        assert time.monotonic() - begun < 10


class TestDefaults:
    """Concurrency defaults follow the current configuration."""

    def test_defaults_read_at_construction(self, monkeypatch):
        monkeypatch.setattr(Constants, "FETCH_CONCURRENCY", 7)
        monkeypatch.setattr(Constants, "BUILD_CONCURRENCY", 3)
        scheduler = InstallScheduler()
        assert (scheduler.fetch_concurrency, scheduler.build_concurrency) == (7, 3)
