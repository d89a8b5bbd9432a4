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
Parser for stack manifests (Compose-style YAML).
"""
import shlex
import yaml
from typing import Dict, Any, List, Optional
from pydantic import ValidationError

from ..MODELS.stack_config import StackConfig
from ..MODELS.service_definition import ServiceDefinition, HealthCheck, VolumeMount
from ..MODELS.tunnel_config import TunnelConfig, TunnelRoute
from ..UTILS.string_interpolation import EnvironmentInterpolator
from ..UTILS.durations import parse_duration
from ..exceptions import ConfigurationError, MissingConfigurationError


class ManifestParser:
    """
    Parser for stack manifest files.
    """
    def __init__(self, context: Optional[Dict[str, str]] = None):
        """
        Initializes the parser with the variables used for interpolation.

        :param context: Resolved variables (defaults, .env file and process environment).
        """
        self.context = dict(context or {})

    def parse(self, manifest_path: str) -> StackConfig:
        """
        Parses a manifest file from a path.

        :param manifest_path: Path to the manifest.
        :return: Parsed configuration.
        """
        try:
            with open(manifest_path, 'r') as f:
                content = f.read()
        except FileNotFoundError:
            raise ConfigurationError(
                f"Manifest {manifest_path} not found",
                hint="run 'stackvisor init' or pass --file",
            )
        return self.parse_from_string(content)

    def parse_from_string(self, content: str) -> StackConfig:
        """
        Parses a manifest from a string.

        :param content: YAML content of the manifest.
        :return: Parsed configuration.
        :raises MissingConfigurationError: If ${VAR:?} references are unset.
        :raises ConfigurationError: If the YAML or a service block is invalid.
        """
        content, missing = EnvironmentInterpolator.interpolate(content, self.context)
        if missing:
            raise MissingConfigurationError(missing)

        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Manifest is not valid YAML: {e}", hint="fix the manifest syntax")
        if not data:
            data = {}
        if not isinstance(data, dict):
            raise ConfigurationError("Manifest must be a mapping with a 'services' key")

        services = {}
        for name, spec in self._mapping(data, "services").items():
            services[name] = self._parse_service(str(name), spec or {})

        try:
            return StackConfig(
                services=services,
                networks=list(self._mapping(data, "networks")),
                volumes=list(self._mapping(data, "volumes")),
                tunnel=self._parse_tunnel(self._mapping(data, "x-tunnel")),
            )
        except ValidationError as e:
            raise ConfigurationError(f"Invalid manifest: {e}", hint="fix the manifest")

    def _parse_service(self, name: str, spec: Dict[str, Any]) -> ServiceDefinition:
        """
        Parses a single service block.

        :param name: The name of the service.
        :param spec: The service block.
        :return: A ServiceDefinition instance.
        """
        if not isinstance(spec, dict):
            raise ConfigurationError(f"Service {name} must be a mapping", service=name)

        try:
            return ServiceDefinition(
                name=name,
                image_name=spec.get('image', '') or '',
                container_name=spec.get('container_name'),
                cmd=self._to_command(spec.get('command')),
                entrypoint=self._to_command(spec.get('entrypoint')),
                working_dir=spec.get('working_dir'),
                restart=str(spec.get('restart', 'no')),
                environment=self._parse_environment(spec.get('environment')),
                environment_files=self._to_list(spec.get('env_file')),
                secret_keys=self._to_list(spec.get('x-secrets')),
                ports=self._parse_ports(name, spec.get('ports') or []),
                networks=self._parse_networks(spec.get('networks')),
                volumes=self._parse_volumes(name, spec.get('volumes') or []),
                health_check=self._parse_healthcheck(name, spec.get('healthcheck')),
                depends_on=self._parse_depends_on(spec.get('depends_on')),
                labels=self._parse_environment(spec.get('labels')),
            )
        except (ValueError, TypeError, KeyError, AttributeError) as e:
            raise ConfigurationError(f"Invalid service {name}: {e}", service=name, hint="fix the service block")

    def _parse_environment(self, env_spec: Any) -> Dict[str, str]:
        environment: Dict[str, str] = {}
        if isinstance(env_spec, list):
            for e in env_spec:
                if '=' in str(e):
                    k, v = str(e).split('=', 1)
                    environment[k] = v
                else:
                    # Bare key: pass the resolved value through
                    environment[str(e)] = self.context.get(str(e), '')
        elif isinstance(env_spec, dict):
            environment = {str(k): '' if v is None else str(v) for k, v in env_spec.items()}
        return environment

    def _parse_ports(self, name: str, port_specs: List[Any]) -> Dict[int, Optional[int]]:
        ports: Dict[int, Optional[int]] = {}
        for p in port_specs:
            try:
                if isinstance(p, dict):
                    published = p.get('published')
                    ports[int(p['target'])] = int(published) if published is not None else None
                    continue
                text = str(p).split('/')[0]  # drop /tcp
                parts = text.split(':')
                if len(parts) == 1:
                    ports[int(parts[0])] = None
                else:
                    # host_ip:host:container or host:container
                    ports[int(parts[-1])] = int(parts[-2]) if parts[-2] else None
            except (ValueError, KeyError):
                raise ConfigurationError(f"Invalid port mapping '{p}'", service=name,
                                         hint="use 'host:container', e.g. '5678:5678'")
        return ports

    def _parse_volumes(self, name: str, volume_specs: List[Any]) -> List[VolumeMount]:
        volumes = []
        for v in volume_specs:
            if isinstance(v, dict):
                volumes.append(VolumeMount(
                    source=v.get('source', ''),
                    target=v['target'],
                    read_only=bool(v.get('read_only', False)),
                ))
                continue
            parts = str(v).split(':')
            if len(parts) == 2:
                volumes.append(VolumeMount(source=parts[0], target=parts[1]))
            elif len(parts) == 3:
                volumes.append(VolumeMount(source=parts[0], target=parts[1], read_only=(parts[2] == 'ro')))
            else:
                raise ConfigurationError(f"Invalid volume mapping '{v}'", service=name,
                                         hint="use 'name:/path' or 'name:/path:ro'")
        return volumes

    def _parse_networks(self, networks: Any) -> List[str]:
        if isinstance(networks, dict):
            return list(networks.keys())
        return self._to_list(networks)

    def _parse_depends_on(self, depends_on: Any) -> List[str]:
        if isinstance(depends_on, dict):
            return list(depends_on.keys())
        return self._to_list(depends_on)

    def _parse_healthcheck(self, name: str, spec: Any) -> Optional[HealthCheck]:
        if not spec:
            return None
        if not isinstance(spec, dict):
            raise ConfigurationError("healthcheck must be a mapping", service=name, hint="fix the healthcheck block")
        if spec.get('disable'):
            return HealthCheck(test=['NONE'])
        test = spec.get('test')
        if isinstance(test, str):
            test = ['CMD-SHELL', test]
        try:
            return HealthCheck(
                test=test or [],
                http=spec.get('http'),
                interval=parse_duration(spec.get('interval'), 10.0),
                timeout=parse_duration(spec.get('timeout'), 5.0),
                retries=int(spec.get('retries', 3)),
                start_period=parse_duration(spec.get('start_period'), 0.0),
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid healthcheck: {e}", service=name, hint="fix the healthcheck block")

    def _parse_tunnel(self, spec: Dict[str, Any]) -> TunnelConfig:
        routes = [
            TunnelRoute(hostname=str(hostname), target=str(target))
            for hostname, target in self._mapping(spec, "routes", "tunnel").items()
        ]
        return TunnelConfig(token=spec.get('token') or None, routes=routes)

    @staticmethod
    def _mapping(block: Dict[str, Any], key: str, service: Optional[str] = None) -> Dict[Any, Any]:
        value = block.get(key) or {}
        if not isinstance(value, dict):
            raise ConfigurationError(f"'{key}' must be a mapping", service=service, hint="fix the manifest")
        return value

    def _to_command(self, val: Any) -> List[str]:
        """Commands given as a string are split the way a shell would."""
        if isinstance(val, str):
            return shlex.split(val)
        return self._to_list(val)

    def _to_list(self, val: Any) -> List[str]:
        """
        Helper to ensure a value is a list of strings.

        :param val: The value to convert.
        :return: A list of strings.
        """
        if val is None:
            return []
        if isinstance(val, str):
            return [val]
        return [str(v) for v in val]
