"""Channel adapters: the contract and the chat-web bridge client."""

from .base import (
    AdapterEvents,
    AdapterFactory,
    ChannelAdapter,
    RawMessage,
    prepare_profile_dir,
    validate_tenant_id,
)
from .bridge import BridgeChannelAdapter, bridge_adapter_factory

__all__ = [
    "AdapterEvents",
    "AdapterFactory",
    "ChannelAdapter",
    "RawMessage",
    "prepare_profile_dir",
    "validate_tenant_id",
    "BridgeChannelAdapter",
    "bridge_adapter_factory",
]
