"""Process engine integration."""

from .client import ExternalTask, InstanceState, InstanceStatus, ProcessEngineClient
from .retry import RetryPolicy

__all__ = [
    "ExternalTask",
    "InstanceState",
    "InstanceStatus",
    "ProcessEngineClient",
    "RetryPolicy",
]
