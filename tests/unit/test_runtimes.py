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
Unit tests for the Docker runtime command construction, process runtime
logs and log aggregation.
"""
import os

import pytest

from fakes import FakeRuntime, make_service, wait_for
from stackvisor.MANAGERS.log_aggregator import LogAggregator
from stackvisor.MANAGERS.volume_manager import VolumeManager
from stackvisor.MODELS.service_definition import ServiceDefinition, VolumeMount
from stackvisor.RUNNERS.docker_runtime import DockerRuntime
from stackvisor.RUNNERS.process_runtime import TAIL_LINES, ProcessRuntime
from stackvisor.exceptions import ServiceStartError


@pytest.fixture
def docker(tmp_path):
    return DockerRuntime(VolumeManager(str(tmp_path)), docker_bin="docker-not-installed")


class TestDockerRuntime:
    """Tests for DockerRuntime."""

    def test_run_command(self, docker):
        svc = ServiceDefinition(
            name="n8n",
            image_name="n8nio/n8n:latest",
            ports={5678: 5678},
            networks=["ai-stack", "tunnel"],
            volumes=[VolumeMount(source="n8n_data", target="/home/node/.n8n")],
            environment={"DB_POSTGRESDB_PASSWORD": "pg-secret"},
        )
        args = docker.build_run_command(svc, {"DB_POSTGRESDB_PASSWORD": "pg-secret", "TZ": "UTC"})

        assert args[:4] == ["run", "-d", "--name", "stackvisor-n8n"]
        assert args[-1] == "n8nio/n8n:latest"
        assert ["--network", "ai-stack"] == args[args.index("--network"):args.index("--network") + 2]
        assert "5678:5678" in args
        volume = docker.volume_manager.get_volume("n8n_data")
        assert f"{volume.path}:/home/node/.n8n" in args
        # Secret values never appear on the command line
        assert "pg-secret" not in " ".join(args)
        assert "DB_POSTGRESDB_PASSWORD" in args

    def test_command_and_entrypoint(self, docker):
        svc = ServiceDefinition(
            name="ollama",
            image_name="ollama/ollama",
            container_name="ollama",
            entrypoint=["/bin/sh", "-c"],
            cmd=["ollama serve"],
            volumes=[VolumeMount(source="./models", target="/models", read_only=True)],
        )
        args = docker.build_run_command(svc, {})
        assert args[3] == "ollama"
        assert args[args.index("--entrypoint") + 1] == "/bin/sh"
        assert args[-3:] == ["ollama/ollama", "-c", "ollama serve"]
        assert any(a.endswith(":/models:ro") for a in args)

    def test_start_without_docker(self, docker):
        with pytest.raises(ServiceStartError):
            docker.start(make_service("db"), {})

    def test_start_without_image(self, docker):
        svc = ServiceDefinition(name="job", cmd=["python", "job.py"])
        with pytest.raises(ServiceStartError) as exc_info:
            docker.start(svc, {})
        assert "image" in str(exc_info.value)

    def test_inspect_without_docker(self, docker):
        svc = make_service("db")
        assert docker.is_running(svc) is False
        assert docker.exit_code(svc) is None


class TestProcessRuntime:
    """Tests for ProcessRuntime log handling."""

    def _write_log(self, runtime, service, lines):
        os.makedirs(runtime.log_dir, exist_ok=True)
        with open(runtime.log_path(service), "w") as f:
            f.writelines(f"{line}\n" for line in lines)

    def test_logs_start_at_current_run(self, tmp_path):
        runtime = ProcessRuntime(str(tmp_path))
        svc = make_service("job", cmd=["sh", "-c", "echo second run"])
        self._write_log(runtime, svc, ["first run"])

        runtime.start(svc, dict(os.environ))
        assert wait_for(lambda: not runtime.is_running(svc))
        runtime.stop(svc)

        lines = list(runtime.stream_logs(svc, follow=False))
        assert lines == ["second run"]
        with open(runtime.log_path(svc)) as f:
            assert f.read() == "first run\nsecond run\n"

    def test_logs_of_unmanaged_service_show_tail(self, tmp_path):
        runtime = ProcessRuntime(str(tmp_path))
        svc = make_service("job", cmd=["true"])
        self._write_log(runtime, svc, [f"line {i}" for i in range(150)])

        lines = list(runtime.stream_logs(svc, follow=False))
        assert len(lines) == TAIL_LINES
        assert lines[0] == "line 50"
        assert lines[-1] == "line 149"


class TestLogAggregator:
    """Tests for LogAggregator."""

    def test_merges_streams(self):
        runtime = FakeRuntime()
        runtime.logs = {"db": ["ready", "checkpoint"], "app": ["listening"]}
        aggregator = LogAggregator(runtime)
        lines = list(aggregator.stream([make_service("db"), make_service("app")], follow=False))
        assert sorted(lines) == [("app", "listening"), ("db", "checkpoint"), ("db", "ready")]
        assert [line for name, line in lines if name == "db"] == ["ready", "checkpoint"]

    def test_tail_logs_prefixes_lines(self):
        runtime = FakeRuntime()
        runtime.logs = {"db": ["ready"], "open-webui": ["started"]}
        out = []
        LogAggregator(runtime).tail_logs([make_service("db"), make_service("open-webui")],
                                         follow=False, echo=out.append)
        assert sorted(out) == ["db         | ready", "open-webui | started"]
