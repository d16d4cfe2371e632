"""Rotating Tor HTTP proxy pool behind a single HAProxy entry point."""

__version__ = "0.1.0"

from .application import TorotatorApp
from .backend_registry import BackendRegistry
from .config_manager import TorotatorSettings
from .haproxy_controller import HAProxyController, ReloadState
from .port_allocator import PortAllocator
from .process import SupervisedProcess
from .rotation_scheduler import RotationScheduler
from .worker_pair import PairState, RetireReason, WorkerPair

__all__ = [
    "__version__",
    "BackendRegistry",
    "HAProxyController",
    "PairState",
    "PortAllocator",
    "ReloadState",
    "RetireReason",
    "RotationScheduler",
    "SupervisedProcess",
    "TorotatorApp",
    "TorotatorSettings",
    "WorkerPair",
]
