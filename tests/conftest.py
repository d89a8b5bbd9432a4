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

import pytest

from fakes import FakeRuntime, make_service, make_stack


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def chain():
    """db <- app <- ui"""
    return make_stack(
        make_service("db"),
        make_service("app", depends_on=["db"]),
        make_service("ui", depends_on=["app"]),
    )
