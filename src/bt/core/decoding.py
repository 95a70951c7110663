"""
Decoding of Bitbucket JSON objects into caller supplied types.
"""

import dataclasses
from typing import Any, TypeVar

from bt.core.exceptions import UnknownAPIError

T = TypeVar("T")


def decode_into(data: Any, into: type[T]) -> T:
    """
    Build ``into`` from decoded JSON.

    Types with a ``from_dict`` classmethod are built with it. Dataclasses are
    built from the keys matching their fields, so unknown keys in the API
    response are ignored. Anything else receives the object as keyword
    arguments.

    Raises:
        UnknownAPIError: If ``data`` is not an object and ``into`` has no ``from_dict``
    """
    from_dict = getattr(into, "from_dict", None)
    if callable(from_dict):
        return from_dict(data)
    if not isinstance(data, dict):
        raise UnknownAPIError(f"Cannot decode {type(data).__name__} into {into.__name__}")
    if dataclasses.is_dataclass(into):
        names = {f.name for f in dataclasses.fields(into)}
        data = {k: v for k, v in data.items() if k in names}
    return into(**data)
