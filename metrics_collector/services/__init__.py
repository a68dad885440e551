"""
Source adapters, one per integration.

Adding a source: implement the SourceAdapter protocol
(metrics_collector.collector.runtime) and register its class here.
"""

from typing import Dict, Type

from metrics_collector.errors import ConfigError

from .gsc import GSCAdapter
from .topvisor import TopVisorAdapter

ADAPTERS: Dict[str, Type] = {
    TopVisorAdapter.service_name: TopVisorAdapter,
    GSCAdapter.service_name: GSCAdapter,
}


def create_adapter(service_name: str, settings):
    """Instantiate the adapter registered for service_name."""
    adapter_class = ADAPTERS.get(service_name)
    if adapter_class is None:
        raise ConfigError(
            f"No collector for service '{service_name}'. Available: {', '.join(sorted(ADAPTERS))}"
        )
    return adapter_class(settings)


__all__ = ["ADAPTERS", "create_adapter", "GSCAdapter", "TopVisorAdapter"]
