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
Models for the overall stack configuration.
"""
from typing import List, Dict
from pydantic import BaseModel, Field, model_validator

from .service_definition import ServiceDefinition
from .tunnel_config import TunnelConfig


class StackConfig(BaseModel):
    """
    Complete configuration for a multi-service stack.
    Equivalent to a parsed stack manifest.
    """
    services: Dict[str, ServiceDefinition]
    networks: List[str] = []
    volumes: List[str] = []
    tunnel: TunnelConfig = Field(default_factory=TunnelConfig)

    @model_validator(mode="after")
    def _names_match_keys(self) -> "StackConfig":
        for key, svc in self.services.items():
            if svc.name != key:
                raise ValueError(f"service key '{key}' does not match its name '{svc.name}'")
        return self

    def dependency_graph(self) -> Dict[str, List[str]]:
        """Adjacency mapping: service name -> names it depends on."""
        return {name: list(svc.depends_on) for name, svc in self.services.items()}

    def dependents_of(self, name: str) -> List[str]:
        """Services that directly or transitively depend on ``name``."""
        graph = self.dependency_graph()
        found: List[str] = []
        frontier = [name]
        while frontier:
            current = frontier.pop()
            for svc, deps in graph.items():
                if current in deps and svc not in found:
                    found.append(svc)
                    frontier.append(svc)
        return found
