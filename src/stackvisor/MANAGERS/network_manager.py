"""
Network management for services: host port checks, network membership and
service discovery for natively run services.
"""
from typing import Dict, List, Optional

from ..UTILS.port_finder import find_port_owner, get_free_port, is_port_free
from ..MODELS.service_definition import ServiceDefinition
from ..MODELS.stack_config import StackConfig
from ..exceptions import PortConflictError

DEFAULT_NETWORK = "stackvisor"


class NetworkManager:
    """
    Tracks which services publish which host ports and share which networks.
    """
    def __init__(self, config: Optional[StackConfig] = None):
        """
        Initializes the network manager.

        :param config: Stack whose network membership should be registered.
        """
        self.service_ports: Dict[str, Dict[int, int]] = {}  # service_name -> {container_port: host_port}
        self.host_port_to_service: Dict[int, str] = {}
        self.networks: Dict[str, List[str]] = {}  # network -> member services
        if config is not None:
            for svc in config.services.values():
                self.join_networks(svc)

    def join_networks(self, service_def: ServiceDefinition) -> List[str]:
        """
        Registers a service on its networks (the default network if none are declared).
        """
        names = service_def.networks or [DEFAULT_NETWORK]
        for network in names:
            members = self.networks.setdefault(network, [])
            if service_def.name not in members:
                members.append(service_def.name)
        return names

    def peers(self, service_name: str) -> List[str]:
        """Services sharing at least one network with ``service_name``."""
        found: List[str] = []
        for members in self.networks.values():
            if service_name in members:
                found.extend(m for m in members if m != service_name and m not in found)
        return found

    def check_ports(self, service_def: ServiceDefinition) -> Dict[int, int]:
        """
        Verifies that the host ports a service publishes are free and records them.
        Ports without a fixed host side get a free one.

        :param service_def: The service definition.
        :return: Mapping from container port to host port.
        :raises PortConflictError: If a requested host port is already bound.
        """
        mappings = {}
        for container_port, host_port in service_def.ports.items():
            if host_port is None:
                allocated_port = get_free_port()
            else:
                owner = self.host_port_to_service.get(host_port)
                if owner is not None and owner != service_def.name:
                    raise PortConflictError(service_def.name, host_port, owner=f"service {owner}")
                if not is_port_free(host_port):
                    raise PortConflictError(service_def.name, host_port, owner=find_port_owner(host_port))
                allocated_port = host_port

            mappings[container_port] = allocated_port
            self.host_port_to_service[allocated_port] = service_def.name

        self.service_ports[service_def.name] = mappings
        return mappings

    def release_ports(self, service_name: str) -> None:
        for host_port in self.service_ports.pop(service_name, {}).values():
            self.host_port_to_service.pop(host_port, None)

    def get_service_discovery_env(self, all_services: List[str]) -> Dict[str, str]:
        """
        Generates environment variables for service discovery.
        Example: POSTGRES_HOST=127.0.0.1, POSTGRES_PORT=5432
        """
        env = {}
        for name in all_services:
            prefix = name.upper().replace('-', '_')
            env[f"{prefix}_HOST"] = "127.0.0.1"
            ports = self.service_ports.get(name)
            if ports:
                env[f"{prefix}_PORT"] = str(next(iter(ports.values())))
        return env

    def get_host_port(self, service_name: str, container_port: int) -> Optional[int]:
        """
        Returns the host port for a given service and container port.
        """
        return self.service_ports.get(service_name, {}).get(container_port)
