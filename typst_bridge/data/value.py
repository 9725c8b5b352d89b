"""Tagged representation of the structured input data.

Dynamic Python values are converted into a closed set of variants before they cross the native
boundary: strings, numbers, booleans, null, lists and ordered maps. Anything else is rejected
with :class:`~typst_bridge.errors.InvalidInputError`.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from typing import Annotated, Any, Dict, List, Literal, Optional, Set, Tuple, Union

from pydantic import Field, StrictBool, StrictFloat, StrictInt, StrictStr, model_validator

from typst_bridge.errors import InvalidInputError

from .utils import FrozenModel


class StringValue(FrozenModel):
    type: Literal["string"] = "string"
    value: StrictStr

    def to_python(self) -> str:
        return self.value


class NumberValue(FrozenModel):
    """An integer or a finite float. Integers are never widened to floats."""

    type: Literal["number"] = "number"
    value: Union[StrictInt, StrictFloat]

    @model_validator(mode="after")
    def _validate_finite(self) -> "NumberValue":
        if isinstance(self.value, float) and not math.isfinite(self.value):
            raise ValueError(f"Number must be finite, got {self.value}")
        return self

    def to_python(self) -> Union[int, float]:
        return self.value


class BoolValue(FrozenModel):
    type: Literal["bool"] = "bool"
    value: StrictBool

    def to_python(self) -> bool:
        return self.value


class NullValue(FrozenModel):
    type: Literal["null"] = "null"

    def to_python(self) -> None:
        return None


class ListValue(FrozenModel):
    type: Literal["list"] = "list"
    items: Tuple["InputValue", ...] = ()

    def to_python(self) -> List[Any]:
        return [item.to_python() for item in self.items]


class MapValue(FrozenModel):
    """An ordered map with string keys. Entry order is the order the engine sees."""

    type: Literal["map"] = "map"
    entries: Tuple[Tuple[StrictStr, "InputValue"], ...] = ()

    @model_validator(mode="after")
    def _validate_unique_keys(self) -> "MapValue":
        seen: Set[str] = set()
        for key, _ in self.entries:
            if key in seen:
                raise ValueError(f"Duplicate map key '{key}'")
            seen.add(key)
        return self

    def keys(self) -> List[str]:
        return [key for key, _ in self.entries]

    def get(self, key: str) -> Optional["InputValue"]:
        for k, v in self.entries:
            if k == key:
                return v
        return None

    def __len__(self) -> int:
        return len(self.entries)

    def to_python(self) -> Dict[str, Any]:
        return {key: value.to_python() for key, value in self.entries}


InputValue = Annotated[
    Union[StringValue, NumberValue, BoolValue, NullValue, ListValue, MapValue],
    Field(discriminator="type"),
]
"""Any structured input value."""

ListValue.model_rebuild()
MapValue.model_rebuild()

_VARIANTS = (StringValue, NumberValue, BoolValue, NullValue, ListValue, MapValue)


class InputDocument(MapValue):
    """The top-level input document: an ordered map from binding names to values."""

    @classmethod
    def from_python(cls, data: Optional[Mapping]) -> "InputDocument":
        """Build a document from a Python mapping, keeping key order.

        Parameters
        ----------
        data : Optional[Mapping]
            Mapping of binding names to JSON-like values. None means an empty document.

        Returns
        -------
        InputDocument
            The tagged document.

        Raises
        ------
        InvalidInputError
            If the mapping is not a mapping, has non-string keys, or contains an unsupported
            value anywhere in its structure.
        """
        if data is None:
            return cls()
        if isinstance(data, MapValue):
            return cls(entries=data.entries)
        if not isinstance(data, Mapping):
            raise InvalidInputError(
                f"Input data must be a mapping of names to values, got {type(data).__name__}"
            )
        converted = to_input_value(data)
        if not isinstance(converted, MapValue):
            raise InvalidInputError(
                f"Input data must convert to a map, got {type(converted).__name__}"
            )
        return cls(entries=converted.entries)


def to_input_value(obj: Any) -> InputValue:
    """Convert a dynamic Python value into its tagged variant.

    ``bool`` is checked before ``int`` so booleans stay booleans; tuples become lists;
    any ``Mapping`` becomes an ordered map.

    Parameters
    ----------
    obj : Any
        The value to convert.

    Returns
    -------
    InputValue
        The tagged value.

    Raises
    ------
    InvalidInputError
        On unsupported types, non-string map keys, non-finite floats or cyclic containers.
    """
    return _convert(obj, "$", set())


def _convert(obj: Any, path: str, active: Set[int]) -> InputValue:
    if isinstance(obj, _VARIANTS):
        return obj
    if obj is None:
        return NullValue()
    if isinstance(obj, bool):
        return BoolValue(value=obj)
    if isinstance(obj, int):
        return NumberValue(value=int(obj))
    if isinstance(obj, float):
        if not math.isfinite(obj):
            raise InvalidInputError(f"Non-finite number {obj!r} at {path}")
        return NumberValue(value=float(obj))
    if isinstance(obj, str):
        return StringValue(value=str(obj))

    if isinstance(obj, (Mapping, list, tuple)):
        if id(obj) in active:
            raise InvalidInputError(f"Cyclic reference at {path}")
        active.add(id(obj))
        try:
            if isinstance(obj, Mapping):
                entries = []
                for key, value in obj.items():
                    if not isinstance(key, str):
                        raise InvalidInputError(
                            f"Map keys must be strings, got {type(key).__name__} key {key!r} "
                            f"at {path}"
                        )
                    entries.append((key, _convert(value, f"{path}.{key}", active)))
                return MapValue(entries=tuple(entries))
            return ListValue(
                items=tuple(_convert(item, f"{path}[{i}]", active) for i, item in enumerate(obj))
            )
        finally:
            active.discard(id(obj))

    raise InvalidInputError(f"Unsupported value of type {type(obj).__name__} at {path}")
