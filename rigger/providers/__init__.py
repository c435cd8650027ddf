"""
Providers: the State Prober and executor backends for each resource kind.
"""

from .base import KindPolicy, Provider, ProviderContext, ProviderRegistry
from .registry import Backends, build_backends

__all__ = [
    "KindPolicy",
    "Provider",
    "ProviderContext",
    "ProviderRegistry",
    "Backends",
    "build_backends",
]
