"""
Module definitions and instances.

A :class:`ModuleDefinition` is a template: typed inputs, a builder that
produces resource specs, and typed outputs. :func:`instantiate` binds a
definition to input values and produces a :class:`ModuleInstance` whose
resource specs have every literal input substituted in place.
"""

import copy
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from ..errors import MissingInput, TypeMismatch, UnresolvedBinding
from ..expressions import InputRef, OutputRef, ResourceRef, iter_refs, transform
from ..logging import get_logger
from ..types import Parameter, ParameterType, ResourceSpec

logger = get_logger(__name__)


@dataclass(frozen=True)
class OutputDeclaration:
    """A typed output of a module definition."""

    name: str
    type: ParameterType
    description: str = ""


@dataclass
class ModuleBody:
    """What a module builder returns: resources plus output expressions."""

    resources: List[ResourceSpec]
    outputs: Dict[str, Any]


# Builders receive the instance name and the validated input values. Inputs
# bound to another module's output arrive as OutputRef placeholders.
ModuleBuilder = Callable[[str, Mapping[str, Any]], ModuleBody]


@dataclass(frozen=True)
class ModuleDefinition:
    """A reusable module template."""

    kind: str
    inputs: Tuple[Parameter, ...]
    outputs: Tuple[OutputDeclaration, ...]
    builder: ModuleBuilder = field(compare=False)
    description: str = ""

    def input(self, name: str) -> Optional[Parameter]:
        for parameter in self.inputs:
            if parameter.name == name:
                return parameter
        return None

    def output(self, name: str) -> Optional[OutputDeclaration]:
        for declaration in self.outputs:
            if declaration.name == name:
                return declaration
        return None

    @property
    def input_names(self) -> List[str]:
        return [p.name for p in self.inputs]


class ModuleInstance:
    """A module definition bound to concrete inputs within one composition."""

    def __init__(
        self,
        name: str,
        definition: ModuleDefinition,
        inputs: Dict[str, Any],
        resources: List[ResourceSpec],
        output_values: Dict[str, Any],
    ):
        self.name = name
        self.definition = definition
        self.inputs = MappingProxyType(inputs)
        self.resources: Tuple[ResourceSpec, ...] = tuple(resources)
        self._outputs = output_values
        self._by_address = {spec.address: spec for spec in self.resources}

    @property
    def kind(self) -> str:
        return self.definition.kind

    def resource(self, address: str) -> ResourceSpec:
        return self._by_address[address]

    def has_resource(self, address: str) -> bool:
        return address in self._by_address

    def outputs(self) -> Dict[str, Any]:
        """Output name to expression; resolvable once the referenced resources are applied."""
        return dict(self._outputs)

    def bound_inputs(self) -> Dict[str, OutputRef]:
        """Inputs whose value comes from another module instance."""
        return {name: value for name, value in self.inputs.items() if isinstance(value, OutputRef)}

    def qualify(self, address: str) -> str:
        """Composition-wide address of one of this instance's resources."""
        return f"{self.name}.{address}"

    def __repr__(self) -> str:
        return f"ModuleInstance(name={self.name!r}, kind={self.kind!r}, resources={len(self.resources)})"


def instantiate(
    definition: ModuleDefinition,
    inputs: Mapping[str, Any],
    name: Optional[str] = None,
) -> ModuleInstance:
    """
    Bind ``definition`` to ``inputs``.

    Args:
        definition: Module template
        inputs: Input values; literals, or OutputRef for inputs fed by another module
        name: Instance name (defaults to the module kind)

    Returns:
        ModuleInstance with literal inputs substituted into its resources

    Raises:
        UnresolvedBinding: If an input name is not declared by the module
        MissingInput: If a declared input without default is absent
        TypeMismatch: If a literal input does not match its declared type
        SubnetZoneMismatch: Raised by the network builder on mismatched lists
    """
    name = name or definition.kind

    unknown = [key for key in inputs if definition.input(key) is None]
    if unknown:
        raise UnresolvedBinding(
            name, ", ".join(f"{name}.{key}" for key in unknown),
            f"module '{definition.kind}' declares no such input",
        )

    values: Dict[str, Any] = {}
    missing: List[str] = []
    for parameter in definition.inputs:
        if parameter.name in inputs:
            values[parameter.name] = copy.deepcopy(inputs[parameter.name])
        elif parameter.has_default:
            values[parameter.name] = parameter.default_value()
        else:
            missing.append(parameter.name)

    if missing:
        raise MissingInput(name, missing, kind=definition.kind)

    for parameter in definition.inputs:
        value = values[parameter.name]
        if isinstance(value, OutputRef):
            continue
        if not parameter.type.accepts(value):
            raise TypeMismatch(parameter.name, parameter.type.value, value, module=name)
        if isinstance(value, tuple):
            values[parameter.name] = list(value)

    body = definition.builder(name, MappingProxyType(values))
    _check_body(definition, name, body)

    def substitute(ref):
        if isinstance(ref, InputRef):
            value = values[ref.name]
            return ref if isinstance(value, OutputRef) else copy.deepcopy(value)
        return ref

    resources = [
        spec.with_attributes(transform(spec.attributes, substitute)) for spec in body.resources
    ]
    output_values = {key: transform(expr, substitute) for key, expr in body.outputs.items()}

    logger.debug(
        "Module instantiated",
        module=name,
        kind=definition.kind,
        resources=len(resources),
        bound_inputs=sorted(k for k, v in values.items() if isinstance(v, OutputRef)),
    )

    return ModuleInstance(name, definition, values, resources, output_values)


def _check_body(definition: ModuleDefinition, name: str, body: ModuleBody) -> None:
    """Reject builder output that references things the instance does not have."""
    addresses = [spec.address for spec in body.resources]
    duplicates = sorted({a for a in addresses if addresses.count(a) > 1})
    if duplicates:
        raise ValueError(f"Module '{name}' declares duplicate resources: {duplicates}")

    known = set(addresses)
    for spec in body.resources:
        for dep in spec.depends_on:
            if dep not in known:
                raise ValueError(f"{name}.{spec.address} depends on unknown resource {dep}")
        _check_refs(definition, name, spec.address, spec.attributes, known)

    for output_name, expr in body.outputs.items():
        if definition.output(output_name) is None:
            raise ValueError(f"Module '{name}' produces undeclared output '{output_name}'")
        _check_refs(definition, name, f"output {output_name}", expr, known)

    missing_outputs = [o.name for o in definition.outputs if o.name not in body.outputs]
    if missing_outputs:
        raise ValueError(f"Module '{name}' does not produce outputs: {missing_outputs}")


def _check_refs(definition, name, where, value, known) -> None:
    for ref in iter_refs(value):
        if isinstance(ref, ResourceRef) and ref.address not in known:
            raise ValueError(f"{name}: {where} references unknown resource {ref.address}")
        if isinstance(ref, InputRef) and definition.input(ref.name) is None:
            raise ValueError(f"{name}: {where} references undeclared input {ref.name}")
        if isinstance(ref, OutputRef):
            raise ValueError(f"{name}: {where} must reach other modules through inputs")
