from .executor import ProbeExecutor, ProbeReport
from .provider import CapabilityProvider, ProviderError, StorageAccountInfo

__all__ = ["ProbeExecutor", "ProbeReport", "CapabilityProvider", "ProviderError", "StorageAccountInfo"]
