"""Vendor adapters, transport and model capabilities."""

from polychat.llm.adapters import VendorAdapter, create_adapter
from polychat.llm.capabilities import lookup_capability, thinking_enabled
from polychat.llm.client import ProviderClient

__all__ = [
    "ProviderClient",
    "VendorAdapter",
    "create_adapter",
    "lookup_capability",
    "thinking_enabled",
]
