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
Unit tests for health probing and the background health monitor.
"""
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer

import pytest

from fakes import FakeRuntime, make_service, wait_for
from stackvisor.MANAGERS.health_monitor import HealthMonitor, HealthProber
from stackvisor.MODELS.service_definition import HealthCheck, ServiceDefinition
from stackvisor.RUNNERS.base_runtime import ProbeResult


class _Handler(BaseHTTPRequestHandler):
    def do_GET(self):
        self.send_response(200 if self.path == "/healthz" else 503)
        self.end_headers()

    def log_message(self, format, *args):
        pass


@pytest.fixture
def http_server():
    server = HTTPServer(("127.0.0.1", 0), _Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_address[1]}"
    server.shutdown()
    server.server_close()


class RecordingRuntime(FakeRuntime):
    def __init__(self, result):
        super().__init__()
        self.result = result
        self.probes = []

    def exec_probe(self, service, command, shell, timeout):
        self.probes.append((command, shell))
        return self.result


def _service(**health):
    return ServiceDefinition(name="svc", image_name="svc", health_check=HealthCheck(**health) if health else None)


class TestHealthProber:
    """Tests for HealthProber."""

    def test_no_healthcheck_means_running(self):
        runtime = FakeRuntime()
        svc = _service()
        prober = HealthProber(runtime)
        assert not prober.probe(svc).success
        runtime.running.add("svc")
        assert prober.probe(svc).success

    def test_cmd_probe(self):
        runtime = RecordingRuntime(ProbeResult(True, "accepting connections"))
        result = HealthProber(runtime).probe(_service(test=["CMD", "pg_isready", "-U", "n8n"]))
        assert result.success
        assert runtime.probes == [(["pg_isready", "-U", "n8n"], False)]

    def test_cmd_shell_probe(self):
        runtime = RecordingRuntime(ProbeResult(False, "no"))
        result = HealthProber(runtime).probe(_service(test=["CMD-SHELL", "curl -f localhost || exit 1"]))
        assert not result.success
        assert runtime.probes == [("curl -f localhost || exit 1", True)]

    def test_http_probe(self, http_server):
        prober = HealthProber(FakeRuntime())
        assert prober.probe(_service(http=f"{http_server}/healthz")).success
        result = prober.probe(_service(http=f"{http_server}/other"))
        assert not result.success
        assert result.output == "HTTP 503"

    def test_http_probe_connection_refused(self):
        result = HealthProber(FakeRuntime()).probe(_service(http="http://127.0.0.1:1/", timeout=1))
        assert not result.success


class TestHealthMonitor:
    """Tests for HealthMonitor."""

    def test_reports_results_for_watched_services(self):
        svc = make_service("db", interval=0.01)
        results = []
        prober = HealthProber(RecordingRuntime(ProbeResult(True, "ok")))
        prober.runtime.running.add("db")
        monitor = HealthMonitor({"db": svc}, prober, on_result=lambda *args: results.append(args),
                                interval=0.01)
        monitor.watch("db")
        monitor.start()
        try:
            assert wait_for(lambda: len(results) >= 2)
        finally:
            monitor.stop()
        name, result, exit_code = results[0]
        assert name == "db"
        assert result.success
        assert exit_code is None

    def test_reports_exit_code_of_dead_process(self):
        runtime = RecordingRuntime(ProbeResult(False, "refused"))
        runtime.exit_codes["db"] = 137
        results = []
        monitor = HealthMonitor({"db": make_service("db", interval=0.01)}, HealthProber(runtime),
                                on_result=lambda *args: results.append(args), interval=0.01)
        monitor.watch("db")
        monitor.start()
        try:
            assert wait_for(lambda: len(results) >= 1)
        finally:
            monitor.stop()
        assert results[0][2] == 137

    def test_unwatched_services_not_probed(self):
        runtime = RecordingRuntime(ProbeResult(True, "ok"))
        results = []
        monitor = HealthMonitor({"db": make_service("db", interval=0.01)}, HealthProber(runtime),
                                on_result=lambda *args: results.append(args), interval=0.01)
        monitor.start()
        try:
            threading.Event().wait(0.1)
        finally:
            monitor.stop()
        assert results == []
