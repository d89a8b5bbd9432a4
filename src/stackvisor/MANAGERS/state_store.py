"""
Persistence of the latest service state snapshot, so commands run from
another process (status, stop) can see what a running supervisor did.
"""
import json
import os
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from ..MODELS.runtime_state import ServiceStatus
from ..exceptions import ConfigurationError


class StateStore:
    """
    Reads and writes ``state.json`` in the state directory.
    """
    def __init__(self, state_dir: str):
        self.state_dir = state_dir
        self.path = os.path.join(state_dir, "state.json")

    def save(self, services: Dict[str, ServiceStatus], healthy_order: List[str],
             tunnel: Optional[Dict[str, object]] = None) -> None:
        os.makedirs(self.state_dir, exist_ok=True)
        payload = {
            "updated_at": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "services": {name: status.to_dict() for name, status in services.items()},
            "healthy_order": list(healthy_order),
            "tunnel": tunnel,
        }
        tmp = self.path + ".tmp"
        with open(tmp, "w") as f:
            json.dump(payload, f, indent=2)
        os.replace(tmp, self.path)

    def load(self) -> Tuple[Dict[str, ServiceStatus], List[str], Optional[Dict[str, object]]]:
        """
        :return: Service statuses, the order services reached Healthy, and
                 the tunnel status if one was recorded. Empty when nothing
                 has been saved yet.
        """
        if not os.path.exists(self.path):
            return {}, [], None
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
            services = {name: ServiceStatus.from_dict(entry) for name, entry in data.get("services", {}).items()}
            return services, list(data.get("healthy_order", [])), data.get("tunnel")
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise ConfigurationError(
                f"State file {self.path} is unreadable: {e}",
                hint=f"delete {self.path}; running services are detected again on the next start",
            )

    def clear(self) -> None:
        if os.path.exists(self.path):
            os.remove(self.path)
