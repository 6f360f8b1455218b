"""
Typed references used inside resource attributes, module outputs and bindings.

Dependencies between resources and modules are expressed with these objects
rather than interpolated strings so that the graph resolver can see every
edge. Values are plain Python data (str, numbers, lists, dicts) that may nest
references at any depth.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, Tuple, Union


class _Unknown:
    """Placeholder for a value that is only known after apply."""

    def __repr__(self) -> str:
        return "(known after apply)"

    def __deepcopy__(self, memo):
        return self

    def __copy__(self):
        return self


UNKNOWN = _Unknown()


@dataclass(frozen=True)
class InputRef:
    """Reference to a declared input of the enclosing module."""

    name: str


@dataclass(frozen=True)
class ResourceRef:
    """Reference to an attribute of another resource in the same module instance."""

    address: str
    attribute: str = "id"


@dataclass(frozen=True)
class OutputRef:
    """Reference to a declared output of a module instance in the same composition."""

    instance: str
    output: str

    def __str__(self) -> str:
        return f"{self.instance}.{self.output}"


@dataclass(frozen=True)
class Format:
    """A ``str.format`` template whose named arguments may be references."""

    template: str
    args: Tuple[Tuple[str, Any], ...] = ()


def fmt(template: str, **args: Any) -> Format:
    """Build a :class:`Format` expression, e.g. ``fmt("{env}-vpc", env=InputRef("env"))``."""
    return Format(template, tuple(sorted(args.items())))


Reference = Union[InputRef, ResourceRef, OutputRef]
REFERENCE_TYPES = (InputRef, ResourceRef, OutputRef)


def iter_refs(value: Any) -> Iterator[Reference]:
    """Yield every reference nested in ``value``."""
    if isinstance(value, REFERENCE_TYPES):
        yield value
    elif isinstance(value, Format):
        for _, arg in value.args:
            yield from iter_refs(arg)
    elif isinstance(value, dict):
        for item in value.values():
            yield from iter_refs(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_refs(item)


def contains_unknown(value: Any) -> bool:
    """Check whether ``value`` holds an unresolved placeholder anywhere."""
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return any(contains_unknown(v) for v in value)
    return False


def is_concrete(value: Any) -> bool:
    """A value is concrete when it holds neither references nor placeholders."""
    if isinstance(value, Format):
        return False
    return not contains_unknown(value) and next(iter_refs(value), None) is None


def transform(value: Any, resolve: Callable[[Reference], Any]) -> Any:
    """Rebuild ``value`` with every reference replaced by ``resolve(ref)``.

    ``resolve`` may return another reference (partial substitution), a
    concrete value, or :data:`UNKNOWN`. Formats render once all of their
    arguments are concrete and collapse to :data:`UNKNOWN` if any argument is
    unknown. Tuples come back as lists so results compare equal to values
    loaded from JSON state.
    """
    if isinstance(value, REFERENCE_TYPES):
        return resolve(value)
    if isinstance(value, Format):
        args: Dict[str, Any] = {name: transform(arg, resolve) for name, arg in value.args}
        if any(contains_unknown(arg) for arg in args.values()):
            return UNKNOWN
        if all(is_concrete(arg) for arg in args.values()):
            return value.template.format(**args)
        return Format(value.template, tuple(args.items()))
    if isinstance(value, dict):
        return {key: transform(item, resolve) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [transform(item, resolve) for item in value]
    return value
