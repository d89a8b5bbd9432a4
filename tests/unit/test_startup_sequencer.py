# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Unit tests for health-gated startup sequencing.
"""
import threading
import time

import pytest

from fakes import ScriptedProber, make_service, make_stack, wait_for
from stackvisor.MODELS.runtime_state import ServiceState, ServiceStatus
from stackvisor.RUNNERS.base_runtime import ProbeResult
from stackvisor.RUNNERS.startup_sequencer import StartupSequencer
from stackvisor.exceptions import (
    CyclicDependencyError,
    DependencyNotHealthyError,
    HealthCheckTimeout,
    PortConflictError,
    ServiceStartError,
    StartupFailedError,
    UnknownServiceError,
)


def _sequencer(config, runtime, **kwargs):
    prober_options = {k: kwargs.pop(k) for k in ("healthy_after", "never") if k in kwargs}
    return StartupSequencer(config, runtime, prober=ScriptedProber(runtime, **prober_options), **kwargs)


class TestStartOrder:
    """Services start strictly after their dependencies are healthy."""

    def test_chain_starts_in_dependency_order(self, chain, runtime):
        seq = _sequencer(chain, runtime)
        became_healthy = seq.start()
        assert became_healthy == ["db", "app", "ui"]
        assert runtime.started() == ["db", "app", "ui"]
        assert seq.healthy_order == ["db", "app", "ui"]
        assert all(s.state == ServiceState.HEALTHY for s in seq.snapshot().values())

    def test_dependent_launched_only_after_dependency_healthy(self, chain, runtime):
        snapshots = []
        seq = _sequencer(chain, runtime, on_change=snapshots.append,
                         healthy_after={"db": 3, "app": 2})
        chain.services["db"].health_check.start_period = 5.0
        chain.services["app"].health_check.start_period = 5.0
        seq.start()

        for dependent, dependency in (("app", "db"), ("ui", "app")):
            first_start = next(s for s in snapshots if s[dependent].state == ServiceState.STARTING)
            assert first_start[dependency].state == ServiceState.HEALTHY

    def test_independent_branch_not_held_up_by_slow_probe(self, runtime):
        config = make_stack(
            make_service("db", start_period=5.0),
            make_service("cache"),
        )
        seq = _sequencer(config, runtime, healthy_after={"db": 20})
        seq.start()
        assert seq.healthy_order == ["cache", "db"]

    def test_start_subset_includes_dependencies(self, chain, runtime):
        seq = _sequencer(chain, runtime)
        seq.start(["app"])
        assert runtime.started() == ["db", "app"]
        assert seq.state("ui") == ServiceState.PENDING

    def test_start_unknown_service(self, chain, runtime):
        seq = _sequencer(chain, runtime)
        with pytest.raises(UnknownServiceError):
            seq.start(["nope"])
        assert runtime.calls == []

    def test_start_twice_is_idempotent(self, chain, runtime):
        snapshots = []
        seq = _sequencer(chain, runtime, on_change=snapshots.append)
        seq.start()
        transitions = len(snapshots)

        assert seq.start() == []
        assert runtime.started() == ["db", "app", "ui"]
        assert runtime.prepared == 1
        assert len(snapshots) == transitions


class TestStopOrder:
    """Teardown runs in reverse of the order services reached Healthy."""

    def test_stop_reverses_healthy_order(self, chain, runtime):
        seq = _sequencer(chain, runtime)
        seq.start()
        stopped = seq.stop()
        assert stopped == ["ui", "app", "db"]
        assert runtime.stopped() == ["ui", "app", "db"]
        assert all(s.state == ServiceState.STOPPED for s in seq.snapshot().values())
        assert seq.healthy_order == []

    def test_stop_twice_is_idempotent(self, chain, runtime):
        seq = _sequencer(chain, runtime)
        seq.start()
        seq.stop()
        assert seq.stop() == []
        assert runtime.stopped() == ["ui", "app", "db"]

    def test_stop_order_follows_actual_healthy_order(self, runtime):
        config = make_stack(
            make_service("a", start_period=5.0),
            make_service("b"),
        )
        seq = _sequencer(config, runtime, healthy_after={"a": 10})
        seq.start()
        assert seq.healthy_order == ["b", "a"]
        assert seq.stop() == ["a", "b"]


class TestFailures:
    """Failures are isolated to the service and its dependents."""

    def test_dependency_never_healthy(self, chain, runtime):
        chain.services["db"].health_check.start_period = 0.3
        chain.services["db"].health_check.interval = 0.05
        seq = _sequencer(chain, runtime, never=["db"])

        started = time.monotonic()
        with pytest.raises(StartupFailedError) as exc_info:
            seq.start()
        assert time.monotonic() - started < 3.0

        error = exc_info.value
        assert list(error.failures) == ["db"]
        assert isinstance(error.failures["db"], HealthCheckTimeout)
        assert error.blocked == ["app", "ui"]
        assert error.exit_code == HealthCheckTimeout.exit_code
        assert "db" in str(error)

        snapshot = seq.snapshot()
        assert snapshot["db"].state == ServiceState.FAILED
        assert snapshot["app"].state == ServiceState.PENDING
        assert snapshot["ui"].state == ServiceState.PENDING
        assert "db" in snapshot["db"].last_error
        assert runtime.started() == ["db"]

    def test_failed_service_is_stopped_on_teardown(self, chain, runtime):
        chain.services["db"].health_check.start_period = 0.1
        seq = _sequencer(chain, runtime, never=["db"])
        with pytest.raises(StartupFailedError):
            seq.start()
        assert seq.stop() == ["db"]
        assert seq.state("app") == ServiceState.STOPPED

    def test_cycle_detected_before_any_change(self, runtime):
        config = make_stack(
            make_service("a", depends_on=["c"]),
            make_service("b", depends_on=["a"]),
            make_service("c", depends_on=["b"]),
        )
        seq = _sequencer(config, runtime)
        with pytest.raises(CyclicDependencyError) as exc_info:
            seq.start()
        assert exc_info.value.cycle[0] == exc_info.value.cycle[-1]
        assert all(s.state == ServiceState.PENDING for s in seq.snapshot().values())
        assert runtime.calls == []
        assert runtime.prepared == 0

    def test_port_conflict_isolated(self, runtime):
        config = make_stack(
            make_service("web", ports={80: 8080}),
            make_service("worker", depends_on=["web"]),
            make_service("cache"),
        )

        def port_checker(service):
            if service.name == "web":
                raise PortConflictError("web", 8080, owner="nginx (pid 42)")

        seq = _sequencer(config, runtime, port_checker=port_checker)
        with pytest.raises(StartupFailedError) as exc_info:
            seq.start()

        assert exc_info.value.exit_code == PortConflictError.exit_code
        assert exc_info.value.blocked == ["worker"]
        assert seq.state("web") == ServiceState.FAILED
        assert seq.state("worker") == ServiceState.PENDING
        assert seq.state("cache") == ServiceState.HEALTHY
        assert "nginx" in seq.snapshot()["web"].last_error

    def test_process_exit_before_healthy(self, chain, runtime):
        runtime.exit_on_start["db"] = 3
        chain.services["db"].health_check.start_period = 5.0
        seq = _sequencer(chain, runtime)
        with pytest.raises(StartupFailedError) as exc_info:
            seq.start()
        assert isinstance(exc_info.value.failures["db"], ServiceStartError)
        assert "code 3" in str(exc_info.value.failures["db"])

    def test_runtime_start_error(self, chain, runtime):
        runtime.fail_start["app"] = ServiceStartError("app", "image not found")
        seq = _sequencer(chain, runtime)
        with pytest.raises(StartupFailedError) as exc_info:
            seq.start()
        assert list(exc_info.value.failures) == ["app"]
        assert seq.state("db") == ServiceState.HEALTHY
        assert seq.state("ui") == ServiceState.PENDING

    def test_start_retries_failed_service(self, chain, runtime):
        runtime.fail_start["db"] = ServiceStartError("db", "boom")
        seq = _sequencer(chain, runtime)
        with pytest.raises(StartupFailedError):
            seq.start()
        del runtime.fail_start["db"]
        assert seq.start() == ["db", "app", "ui"]


class TestRestart:
    """Single-service restarts."""

    def test_restart_healthy_service(self, chain, runtime):
        seq = _sequencer(chain, runtime)
        seq.start()
        seq.restart("app")
        assert runtime.calls[-2:] == [("stop", "app"), ("start", "app")]
        assert seq.state("app") == ServiceState.HEALTHY
        # Still stopped after ui and before db
        assert seq.healthy_order == ["db", "app", "ui"]
        assert seq.stop() == ["ui", "app", "db"]

    def test_restart_requires_healthy_dependencies(self, chain, runtime):
        seq = _sequencer(chain, runtime)
        with pytest.raises(DependencyNotHealthyError) as exc_info:
            seq.restart("app")
        assert exc_info.value.dependencies == {"db": "pending"}
        assert seq.state("app") == ServiceState.STOPPED
        assert runtime.started() == []

    def test_restart_unknown_service(self, chain, runtime):
        seq = _sequencer(chain, runtime)
        with pytest.raises(UnknownServiceError):
            seq.restart("nope")


class TestCancellation:
    """Stop interrupts a start in progress."""

    def test_stop_during_start(self, chain, runtime):
        chain.services["db"].health_check.start_period = 30.0
        chain.services["db"].health_check.interval = 0.05
        seq = _sequencer(chain, runtime, never=["db"])

        outcome = {}

        def run():
            try:
                outcome["result"] = seq.start()
            except Exception as e:
                outcome["error"] = e

        thread = threading.Thread(target=run)
        thread.start()
        assert wait_for(lambda: seq.state("db") == ServiceState.STARTING)

        started = time.monotonic()
        seq.stop()
        thread.join(timeout=5)
        assert not thread.is_alive()
        assert time.monotonic() - started < 3.0

        assert "error" not in outcome
        assert all(s.state == ServiceState.STOPPED for s in seq.snapshot().values())
        assert ("stop", "db") in runtime.calls

    def test_cancel_flag_interrupts_start(self, chain, runtime):
        chain.services["db"].health_check.start_period = 30.0
        seq = _sequencer(chain, runtime, never=["db"])
        timer = threading.Timer(0.2, seq.cancel)
        timer.start()
        try:
            assert seq.start() == []
        finally:
            timer.cancel()
        assert seq.state("db") == ServiceState.STOPPED


class TestHealthDrift:
    """Monitor results applied after startup."""

    def test_unhealthy_after_retries_then_recovers(self, chain, runtime):
        seq = _sequencer(chain, runtime)
        seq.start()
        retries = chain.services["db"].health_check.retries

        for _ in range(retries - 1):
            seq.report_health("db", ProbeResult(False, "timeout"))
        seq.process_events(timeout=0.1)
        assert seq.state("db") == ServiceState.HEALTHY

        seq.report_health("db", ProbeResult(False, "timeout"))
        seq.process_events(timeout=0.1)
        assert seq.state("db") == ServiceState.UNHEALTHY
        assert seq.snapshot()["db"].last_error == "timeout"

        seq.report_health("db", ProbeResult(True, "ok"))
        seq.process_events(timeout=0.1)
        assert seq.state("db") == ServiceState.HEALTHY

    def test_process_exit_marks_failed(self, chain, runtime):
        seq = _sequencer(chain, runtime)
        seq.start()
        seq.report_health("app", ProbeResult(False, "not running"), exit_code=137)
        seq.process_events(timeout=0.1)
        assert seq.state("app") == ServiceState.FAILED
        assert "137" in seq.snapshot()["app"].last_error
        assert "app" not in seq.healthy_order

    def test_stale_results_ignored_after_restart(self, chain, runtime):
        seq = _sequencer(chain, runtime)
        seq.start()
        seq.report_health("db", ProbeResult(False, "not running"), exit_code=1)
        seq.restart("db")
        seq.process_events(timeout=0.1)
        assert seq.state("db") == ServiceState.HEALTHY


class TestRestore:
    """Adopting services left running by another supervisor process."""

    def test_restore_adopts_running_services(self, chain, runtime):
        runtime.running.add("db")
        seq = _sequencer(chain, runtime)
        seq.restore(
            {
                "db": ServiceStatus(state=ServiceState.HEALTHY, healthy_since="2024-01-01T00:00:00Z"),
                "app": ServiceStatus(state=ServiceState.HEALTHY),
                "ui": ServiceStatus(state=ServiceState.PENDING),
            },
            ["db", "app"],
        )
        assert seq.state("db") == ServiceState.HEALTHY
        assert seq.state("app") == ServiceState.STOPPED
        assert seq.state("ui") == ServiceState.PENDING
        assert seq.healthy_order == ["db"]

        seq.start()
        assert runtime.started() == ["app", "ui"]
