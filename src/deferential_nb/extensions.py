"""
Method namespaces on CountExperiment.

A method subpackage attaches its API to every CountExperiment under one
attribute name, e.g. ``se.deseq``. Registration checks that the namespace
class provides the operations it promises, so a half-written accessor
fails at import time instead of on first use:

    @register_count_accessor("deseq", methods=("fit", "results"))
    class DESeqAccessor:
        def __init__(self, se):
            self._se = se
        ...

The namespace object is built once per experiment instance.
"""

from __future__ import annotations

import warnings
from typing import Dict, Sequence, Type


class AccessorRegistrationWarning(Warning):
    """An accessor name shadows an existing CountExperiment attribute."""


class _NamespaceProperty:
    """Instance-only descriptor that builds and caches one namespace object."""

    def __init__(self, name: str, accessor: Type) -> None:
        self.name = name
        self.accessor = accessor

    def __get__(self, obj, cls):
        if obj is None:
            raise AttributeError(
                f"{self.name!r} is a per-experiment namespace; use it on a CountExperiment instance"
            )
        namespaces = obj.__dict__.setdefault("_namespaces", {})
        if self.name not in namespaces:
            try:
                namespaces[self.name] = self.accessor(obj)
            except AttributeError as err:
                # An AttributeError here would be read as "no such attribute".
                raise RuntimeError(f"Could not build the {self.name!r} namespace") from err
        return namespaces[self.name]


def _defined_on(cls: type, name: str) -> bool:
    return any(name in vars(klass) for klass in cls.__mro__)


def registered_accessors() -> Dict[str, Type]:
    """Namespace name -> accessor class for every registered namespace."""
    from .countexperiment import CountExperiment

    found = {}
    for klass in reversed(CountExperiment.__mro__):
        for attr, value in vars(klass).items():
            if isinstance(value, _NamespaceProperty):
                found[attr] = value.accessor
    return found


def register_count_accessor(name: str, methods: Sequence[str] = ()):
    """
    Register a method namespace on CountExperiment.

    Args:
        name: Attribute name, e.g. ``"deseq"``. Shadowing an existing
            attribute issues an AccessorRegistrationWarning.
        methods: Operations the accessor class must define as callables.

    Raises:
        TypeError: If the accessor class lacks one of ``methods``.
    """
    def decorator(accessor):
        from .countexperiment import CountExperiment

        missing = [m for m in methods if not callable(getattr(accessor, m, None))]
        if missing:
            raise TypeError(f"Accessor {accessor.__name__} for {name!r} does not define {missing}")

        if _defined_on(CountExperiment, name):
            warnings.warn(
                f"Accessor {accessor.__name__} registered as {name!r} shadows an existing "
                f"CountExperiment attribute",
                AccessorRegistrationWarning,
                stacklevel=2,
            )

        setattr(CountExperiment, name, _NamespaceProperty(name, accessor))
        return accessor

    return decorator
