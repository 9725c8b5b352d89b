"""Native subsystem: resolving, loading and calling the precompiled engine module.

The typical workflow is:
1. Resolve the binary: path = BinaryResolver(manifest, bundle_dir, cache_dir).resolve()
2. Load it once: handle = NativeModuleLoader().load(path)
3. Call it: artifact = CallBridge(handle).invoke(request, bundle)
"""

from .abi import ABI_VERSION, NativeStatus
from .bridge import CallBridge, invoke_native
from .isolated import IsolatedCallBridge
from .loader import NativeHandle, NativeModuleLoader
from .resolver import BinaryResolver, file_sha256

__all__ = [
    "ABI_VERSION",
    "NativeStatus",
    "BinaryResolver",
    "file_sha256",
    "NativeHandle",
    "NativeModuleLoader",
    "CallBridge",
    "IsolatedCallBridge",
    "invoke_native",
]
