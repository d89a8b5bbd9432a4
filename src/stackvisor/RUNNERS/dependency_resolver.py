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
Dependency resolution for services to determine startup and shutdown order.
"""
from typing import Dict, List, Set

from ..MODELS.stack_config import StackConfig
from ..exceptions import ConfigurationError, CyclicDependencyError


class DependencyResolver:
    """
    Resolves the startup and shutdown order of services based on their dependencies.
    """

    def build_graph(self, config: StackConfig) -> Dict[str, List[str]]:
        """
        Builds the adjacency mapping service -> dependencies.

        :raises ConfigurationError: If a service depends on an undeclared service.
        """
        graph = config.dependency_graph()
        for name, deps in graph.items():
            for dep in deps:
                if dep not in graph:
                    raise ConfigurationError(
                        f"Service {name} depends on undeclared service '{dep}'",
                        service=name,
                        hint=f"declare '{dep}' or remove it from depends_on",
                    )
        return graph

    def resolve_order(self, config: StackConfig) -> List[str]:
        """
        Determines the order to start services using a depth-first topological sort.

        Services come out in manifest order wherever dependencies allow it.

        :param config: The stack configuration.
        :return: Service names in the order they should be started.
        :raises CyclicDependencyError: Naming the services on the cycle.
        """
        graph = self.build_graph(config)

        ordered: List[str] = []
        visited: Set[str] = set()
        path: List[str] = []

        def visit(name: str):
            if name in path:
                cycle = path[path.index(name):] + [name]
                raise CyclicDependencyError(cycle)
            if name in visited:
                return
            path.append(name)
            for dep in graph[name]:
                visit(dep)
            path.pop()
            visited.add(name)
            ordered.append(name)

        for name in graph:
            visit(name)

        return ordered

    def closure(self, config: StackConfig, names: List[str]) -> List[str]:
        """
        The given services plus everything they transitively depend on, in start order.
        """
        graph = self.build_graph(config)
        wanted: Set[str] = set()
        frontier = list(names)
        while frontier:
            name = frontier.pop()
            if name not in wanted:
                wanted.add(name)
                frontier.extend(graph[name])
        return [name for name in self.resolve_order(config) if name in wanted]
