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

import json
import sys

import pytest
from click.testing import CliRunner
from loguru import logger

from stackvisor.CLI.main import cli
from stackvisor.MANAGERS.environment_manager import REQUIRED, TUNNEL_REQUIRED

ENV = """
POSTGRES_USER=n8n
POSTGRES_PASSWORD=secret
POSTGRES_DB=n8n
N8N_BASIC_AUTH_USER=admin
N8N_BASIC_AUTH_PASSWORD=admin-secret
WEBUI_SECRET_KEY=abc123
"""

MANIFEST = """
services:
  db:
    image: postgres:16
    volumes:
      - db-data:/var/lib/postgresql/data
  app:
    image: n8nio/n8n:latest
    depends_on: [db]
"""

CYCLIC = """
services:
  a:
    image: example/a:1.0
    depends_on: [b]
  b:
    image: example/b:1.0
    depends_on: [a]
"""


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for key in list(REQUIRED) + list(TUNNEL_REQUIRED) + ["TUNNEL_HOSTNAMES", "STACKVISOR_RUNTIME",
                                                         "STACKVISOR_MANIFEST", "STACKVISOR_STATE_DIR"]:
        monkeypatch.delenv(key, raising=False)
    yield
    # The CLI points loguru at the runner's captured stderr
    logger.remove()
    logger.add(sys.stderr)


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def project(tmp_path):
    (tmp_path / ".env").write_text(ENV)
    (tmp_path / "stack.yml").write_text(MANIFEST)
    return tmp_path


def test_cli_help(runner):
    result = runner.invoke(cli, ['--help'])
    assert result.exit_code == 0
    for command in ("init", "start", "stop", "restart", "status", "logs", "tunnel", "volumes"):
        assert command in result.output


def test_cli_init(runner, tmp_path):
    result = runner.invoke(cli, ['-C', str(tmp_path), 'init'])
    assert result.exit_code == 0
    assert (tmp_path / "stack.yml").exists()
    assert (tmp_path / ".env.example").exists()
    assert "postgres" in (tmp_path / "stack.yml").read_text()

    (tmp_path / "stack.yml").write_text("# mine")
    result = runner.invoke(cli, ['-C', str(tmp_path), 'init'])
    assert result.exit_code == 0
    assert "already exists" in result.output
    assert (tmp_path / "stack.yml").read_text() == "# mine"

    result = runner.invoke(cli, ['-C', str(tmp_path), 'init', '--force'])
    assert (tmp_path / "stack.yml").read_text() != "# mine"


def test_cli_missing_configuration(runner, tmp_path):
    (tmp_path / "stack.yml").write_text(MANIFEST)
    result = runner.invoke(cli, ['-C', str(tmp_path), 'status'])
    assert result.exit_code == 10
    assert "Error:" in result.output
    # Every missing key is reported, not just the first
    for key in REQUIRED:
        assert key in result.output


def test_cli_status_fresh_project(runner, project):
    result = runner.invoke(cli, ['-C', str(project), 'status'])
    assert result.exit_code == 0, result.output
    assert "SERVICE" in result.output
    assert "db" in result.output
    assert "pending" in result.output
    assert "tunnel: not configured" in result.output


def test_cli_status_json(runner, project, monkeypatch):
    monkeypatch.setenv("STACKVISOR_LOG_LEVEL", "ERROR")
    result = runner.invoke(cli, ['-C', str(project), 'status', '--json'])
    assert result.exit_code == 0, result.output
    data = json.loads(result.output)
    assert set(data["services"]) == {"db", "app"}
    assert data["tunnel"] is None


def test_cli_start_cycle(runner, project):
    (project / "stack.yml").write_text(CYCLIC)
    result = runner.invoke(cli, ['-C', str(project), 'start', '--detach'])
    assert result.exit_code == 11
    assert "Error:" in result.output


def test_cli_restart_unknown_service(runner, project):
    result = runner.invoke(cli, ['-C', str(project), 'restart', 'nope'])
    assert result.exit_code == 18
    assert "nope" in result.output


def test_cli_detach_refused_for_process_runtime(runner, project, monkeypatch):
    monkeypatch.setenv("STACKVISOR_RUNTIME", "process")
    result = runner.invoke(cli, ['-C', str(project), 'start', '--detach'])
    assert result.exit_code == 10
    assert "detached" in result.output


def test_cli_tunnel_requires_token(runner, project):
    result = runner.invoke(cli, ['-C', str(project), 'tunnel'])
    assert result.exit_code == 10
    assert "TUNNEL_TOKEN" in result.output


def test_cli_logs_no_follow(runner, project, monkeypatch):
    monkeypatch.setenv("STACKVISOR_RUNTIME", "process")
    (project / "stack.yml").write_text("services:\n  job:\n    command: [\"sleep\", \"1\"]\n")
    log_dir = project / ".stackvisor" / "logs"
    log_dir.mkdir(parents=True)
    (log_dir / "job.log").write_text("hello\nworld\n")

    result = runner.invoke(cli, ['-C', str(project), 'logs', '--no-follow'])
    assert result.exit_code == 0, result.output
    assert "job | hello" in result.output
    assert "job | world" in result.output


def test_cli_volumes(runner, project):
    result = runner.invoke(cli, ['-C', str(project), 'volumes', 'list'])
    assert result.exit_code == 0, result.output
    assert "VOLUME" in result.output

    result = runner.invoke(cli, ['-C', str(project), 'volumes', 'wipe', 'missing', '--yes'])
    assert result.exit_code == 0, result.output
    assert "No volume named missing" in result.output
