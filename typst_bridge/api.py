"""Public compile API.

The module-level :func:`compile` and :func:`try_compile` go through the process-wide
:class:`Compiler`, which resolves, loads and initializes everything lazily on first use.
"""

from __future__ import annotations

import threading
from typing import Any, ClassVar, Dict, Mapping, Optional, Tuple, Union

from pydantic import ValidationError

from typst_bridge.config import BridgeConfig
from typst_bridge.data import (
    Artifact,
    CompileOptions,
    CompileRequest,
    CompileResult,
    MapValue,
    OutputFormat,
    current_platform_key,
)
from typst_bridge.errors import (
    BridgeError,
    BridgeFatalError,
    InvalidInputError,
    NativeFaultError,
)
from typst_bridge.logging import get_logger
from typst_bridge.native import (
    BinaryResolver,
    CallBridge,
    IsolatedCallBridge,
    NativeHandle,
    NativeModuleLoader,
)
from typst_bridge.resources import ResourceBundle, ResourceRegistry

logger = get_logger("Compiler")

InputData = Optional[Union[Mapping[str, Any], MapValue]]
OptionsLike = Optional[Union[CompileOptions, Mapping[str, Any]]]


def make_request(
    markup: str,
    input_data: InputData = None,
    format: Union[OutputFormat, str] = OutputFormat.PDF,
    options: OptionsLike = None,
) -> CompileRequest:
    """Validate the arguments of a compile call into a :class:`CompileRequest`.

    Raises
    ------
    UnsupportedFormatError
        If ``format`` is not a known output format.
    InvalidInputError
        If the markup, input data or options are malformed.
    """
    try:
        if options is None:
            options = CompileOptions()
        elif not isinstance(options, CompileOptions):
            options = CompileOptions.model_validate(options)
        return CompileRequest(
            markup=markup, input_data=input_data, output_format=format, options=options
        )
    except ValidationError as e:
        raise InvalidInputError(f"Invalid compile request: {e}") from e


class Compiler:
    """Composes the resolver, loader, resource registry and call bridge.

    Use :meth:`get_instance` to obtain the process-wide compiler. Nothing is resolved or loaded
    until the first compile; concurrent first callers block on one initialization and all see
    its outcome. Initialization failures are sticky until :meth:`reset`.
    """

    _instance: ClassVar[Optional["Compiler"]] = None
    """Singleton instance of the Compiler."""

    _instance_lock: ClassVar[threading.Lock] = threading.Lock()

    def __init__(
        self,
        config: Optional[BridgeConfig] = None,
        resolver: Optional[BinaryResolver] = None,
        loader: Optional[NativeModuleLoader] = None,
        registry: Optional[ResourceRegistry] = None,
    ) -> None:
        """Initialize the compiler. Nothing is touched on disk until the first compile.

        Parameters
        ----------
        config : Optional[BridgeConfig]
            Configuration. Defaults to one built from the environment.
        resolver : Optional[BinaryResolver]
            Binary resolver. Defaults to one reading ``config.manifest_path``.
        loader : Optional[NativeModuleLoader]
            Native module loader.
        registry : Optional[ResourceRegistry]
            Resource registry. Defaults to one rooted at ``config.resource_root``.
        """
        self._config = config if config is not None else BridgeConfig()
        self._resolver = resolver
        self._loader = loader if loader is not None else NativeModuleLoader()
        self._registry = (
            registry
            if registry is not None
            else ResourceRegistry(
                self._config.resource_root,
                include_optional=self._config.include_optional_resources,
            )
        )
        self._init_lock = threading.Lock()
        self._bridge: Optional[CallBridge] = None
        self._bundle: Optional[ResourceBundle] = None
        self._init_error: Optional[BridgeFatalError] = None

    @classmethod
    def get_instance(cls) -> "Compiler":
        """Get the process-wide compiler, creating it from the environment on first call."""
        instance = cls._instance
        if instance is None:
            with cls._instance_lock:
                if cls._instance is None:
                    cls._instance = Compiler()
                instance = cls._instance
        return instance

    @classmethod
    def set_instance(cls, compiler: Optional["Compiler"]) -> None:
        """Replace the process-wide compiler, or clear it with None."""
        with cls._instance_lock:
            cls._instance = compiler

    @property
    def config(self) -> BridgeConfig:
        return self._config

    @property
    def loader(self) -> NativeModuleLoader:
        return self._loader

    @property
    def registry(self) -> ResourceRegistry:
        return self._registry

    def compile(
        self,
        markup: str,
        input_data: InputData = None,
        format: Union[OutputFormat, str] = OutputFormat.PDF,
        options: OptionsLike = None,
    ) -> Artifact:
        """Compile ``markup`` into an artifact.

        Parameters
        ----------
        markup : str
            Typst markup.
        input_data : InputData
            Bindings for the markup: a mapping of string keys to strings, numbers, booleans,
            None, lists and nested mappings.
        format : Union[OutputFormat, str]
            ``"pdf"``, ``"svg"`` or ``"png"``.
        options : OptionsLike
            :class:`CompileOptions` or a mapping of its fields.

        Returns
        -------
        Artifact
            The artifact bytes and their format.

        Raises
        ------
        BridgeError
            The subclass matching the failure. Request validation errors are raised before any
            native state is touched.
        """
        request = make_request(markup, input_data, format, options)
        request = self._apply_defaults(request)
        bridge, bundle = self._ensure_initialized()
        fault = self._loader.fault
        if fault is not None:
            raise fault
        return bridge.invoke(request, bundle)

    def try_compile(
        self,
        markup: str,
        input_data: InputData = None,
        format: Union[OutputFormat, str] = OutputFormat.PDF,
        options: OptionsLike = None,
    ) -> CompileResult:
        """Like :meth:`compile` but returns failures as ``CompileError`` values."""
        try:
            return self.compile(markup, input_data, format, options)
        except BridgeError as e:
            return e.to_result()

    def reset(self) -> None:
        """Drop the handle, the bundle and all sticky errors so the next compile initializes again.

        This is the only way to recover after a fatal error or an invalidating native fault.
        """
        with self._init_lock:
            logger.info("Resetting compiler")
            self._bridge = None
            self._bundle = None
            self._init_error = None
            if self._resolver is not None:
                self._resolver.clear()
            self._loader.reset()
            self._registry.reset()

    def info(self) -> Dict[str, Any]:
        """Describe the platform and, once initialized, the loaded engine and fonts."""
        key = current_platform_key()
        data: Dict[str, Any] = {
            "platform": str(key) if key is not None else None,
            "isolation": self._config.isolation,
            "fault_policy": self._config.fault_policy,
            "loaded": self._loader.is_loaded,
        }
        bridge, bundle = self._bridge, self._bundle
        if bridge is not None:
            handle = bridge.handle
            data.update(
                library_path=str(handle.path),
                abi_version=handle.abi_version,
                engine_version=handle.engine_version,
                reentrant=handle.reentrant,
            )
        if bundle is not None:
            data.update(font_count=len(bundle), font_families=bundle.families)
        fault = self._loader.fault
        if fault is not None:
            data["fault"] = fault.message
        return data

    def initialize(self) -> None:
        """Resolve, load and index resources now instead of on the first compile."""
        self._ensure_initialized()

    def _ensure_initialized(self) -> Tuple[CallBridge, ResourceBundle]:
        bridge, bundle = self._bridge, self._bundle
        if bridge is not None and bundle is not None:
            return bridge, bundle
        with self._init_lock:
            if self._init_error is not None:
                raise self._init_error
            if self._bridge is None or self._bundle is None:
                try:
                    handle = self._loader.load(self._get_resolver().resolve())
                    self._bundle = self._registry.init()
                except BridgeFatalError as e:
                    self._init_error = e
                    raise
                self._bridge = self._make_bridge(handle)
            return self._bridge, self._bundle

    def _get_resolver(self) -> BinaryResolver:
        if self._resolver is None:
            self._resolver = BinaryResolver.from_paths(
                self._config.manifest_path, self._config.bundle_dir, self._config.cache_dir
            )
        return self._resolver

    def _make_bridge(self, handle: NativeHandle) -> CallBridge:
        if self._config.isolation == "subprocess":
            return IsolatedCallBridge(handle)
        on_fault = self._invalidate if self._config.fault_policy == "invalidate" else None
        return CallBridge(handle, on_fault=on_fault)

    def _invalidate(self, fault: NativeFaultError) -> None:
        self._loader.invalidate(fault)

    def _apply_defaults(self, request: CompileRequest) -> CompileRequest:
        timeout = self._config.default_timeout
        if timeout is None or request.options.timeout is not None:
            return request
        options = request.options.model_copy(update={"timeout": timeout})
        return request.model_copy(update={"options": options})


def compile(
    markup: str,
    input_data: InputData = None,
    format: Union[OutputFormat, str] = OutputFormat.PDF,
    options: OptionsLike = None,
) -> Artifact:
    """Compile ``markup`` with the process-wide :class:`Compiler`.

    Examples
    --------
    >>> artifact = compile("Hello {{name}}", {"name": "World"}, format="pdf")
    >>> artifact.data[:5]
    b'%PDF-'
    """
    return Compiler.get_instance().compile(markup, input_data, format, options)


def try_compile(
    markup: str,
    input_data: InputData = None,
    format: Union[OutputFormat, str] = OutputFormat.PDF,
    options: OptionsLike = None,
) -> CompileResult:
    """Compile ``markup`` and return an ``Artifact`` or a ``CompileError`` instead of raising."""
    return Compiler.get_instance().try_compile(markup, input_data, format, options)
