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

import gc
import os
import sys
import tracemalloc

import psutil

from fakes import FakeRuntime, make_service, make_stack

from stackvisor.MANAGERS.supervisor import Supervisor
from stackvisor.MODELS.stack_settings import StackSettings
from stackvisor.RUNNERS.process_runner import ProcessRunner


def test_supervisor_memory_leak(tmp_path):
    """
    Checks for memory leaks when repeatedly creating supervisors.
    """
    tracemalloc.start()

    # Baseline
    gc.collect()
    snapshot1 = tracemalloc.take_snapshot()

    for _ in range(100):
        config = make_stack(make_service("db"), make_service("app", depends_on=["db"]))
        supervisor = Supervisor(config, StackSettings(), base_dir=str(tmp_path), runtime=FakeRuntime())
        del supervisor
        del config

    gc.collect()
    snapshot2 = tracemalloc.take_snapshot()

    top_stats = snapshot2.compare_to(snapshot1, "lineno")
    total_diff = sum(stat.size_diff for stat in top_stats)

    # 1 MB is a very generous threshold for 100 iterations of simple object creation
    assert total_diff < 1024 * 1024

    tracemalloc.stop()


def test_process_runner_leak(tmp_path):
    """
    Checks that ProcessRunner closes its log file handles.
    """
    process = psutil.Process(os.getpid())
    initial_fds = process.num_fds() if hasattr(process, "num_fds") else 0

    for i in range(50):
        runner = ProcessRunner(f"svc_{i}", log_file=str(tmp_path / f"svc_{i}.log"))
        # Start and stop to check if log files are closed
        runner.start([sys.executable, "-c", "print('hi')"], env=dict(os.environ))
        runner.stop(timeout=5)
        del runner

    gc.collect()

    # num_fds is Unix only
    if hasattr(process, "num_fds"):
        assert process.num_fds() <= initial_fds + 5
