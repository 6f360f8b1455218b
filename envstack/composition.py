"""
Environment Composition

A composition is a named bundle of module instances wired together with
bindings. Bindings feed an instance input either a literal value or another
instance's output; exports re-publish instance outputs under a
composition-level name. Compositions never reference each other.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from .errors import DanglingInput, TypeMismatch, UnknownOutput, UnresolvedBinding
from .expressions import OutputRef
from .logging import get_logger
from .modules.base import ModuleDefinition, ModuleInstance, instantiate
from .types import ResourceSpec

logger = get_logger(__name__)


@dataclass(frozen=True)
class Binding:
    """Feeds ``instance.input`` from a literal value or an :class:`OutputRef`."""

    instance: str
    input: str
    source: Any

    @property
    def target(self) -> str:
        return f"{self.instance}.{self.input}"


class Composition:
    """An environment's module instances, their wiring and its exports."""

    def __init__(
        self,
        name: str,
        instances: Dict[str, ModuleInstance],
        bindings: List[Binding],
        exports: Dict[str, OutputRef],
        region: Optional[str] = None,
    ):
        self.name = name
        self.region = region
        self.instances = instances
        self.bindings = bindings
        self.exports = exports

    def instance(self, name: str) -> ModuleInstance:
        return self.instances[name]

    def resources(self) -> Iterator[Tuple[ModuleInstance, ResourceSpec]]:
        """Every resource spec, in instance then declaration order."""
        for instance in self.instances.values():
            for spec in instance.resources:
                yield instance, spec

    def addresses(self) -> List[str]:
        return [instance.qualify(spec.address) for instance, spec in self.resources()]

    def export(self, name: str, lookup: Callable[[OutputRef], Any]) -> Any:
        """Resolve export ``name`` through ``lookup``.

        ``lookup`` maps an instance output to its value, returning
        :data:`~envstack.expressions.UNKNOWN` while the producing resources
        have not been applied.
        """
        ref = self.exports.get(name)
        if ref is None:
            raise UnknownOutput(self.name, name, "not exported", exports=", ".join(self.exports))
        return lookup(ref)

    def __repr__(self) -> str:
        return f"Composition(name={self.name!r}, instances={list(self.instances)})"


def compose(
    name: str,
    modules: Mapping[str, ModuleDefinition],
    bindings: Sequence[Binding],
    exports: Optional[Mapping[str, OutputRef]] = None,
    region: Optional[str] = None,
) -> Composition:
    """
    Wire module definitions into a composition.

    Args:
        name: Composition name, usually the environment
        modules: Instance name to module definition, in declaration order
        bindings: Input bindings for the instances
        exports: Export name to instance output
        region: Region the composition is provisioned in; backend default if None

    Returns:
        Composition with every instance instantiated

    Raises:
        UnresolvedBinding: If a binding or export refers to an unknown instance,
            input or output, or if an input is bound twice
        TypeMismatch: If a bound output's declared type differs from the input's
        DanglingInput: If a declared input without default is left unbound
    """
    exports = dict(exports or {})
    inputs: Dict[str, Dict[str, Any]] = {instance: {} for instance in modules}

    for binding in bindings:
        definition = modules.get(binding.instance)
        if definition is None:
            raise UnresolvedBinding(name, binding.target, "no such module instance")

        parameter = definition.input(binding.input)
        if parameter is None:
            raise UnresolvedBinding(
                name, binding.target, f"module '{definition.kind}' declares no such input"
            )

        if binding.input in inputs[binding.instance]:
            raise UnresolvedBinding(name, binding.target, "input is bound more than once")

        if isinstance(binding.source, OutputRef):
            declaration = _resolve_output(name, modules, binding.source)
            if declaration.type is not parameter.type:
                raise TypeMismatch(
                    binding.target,
                    parameter.type.value,
                    f"{binding.source} ({declaration.type.value})",
                    composition=name,
                )

        inputs[binding.instance][binding.input] = binding.source

    for instance_name, definition in modules.items():
        unbound = [
            parameter.name
            for parameter in definition.inputs
            if parameter.name not in inputs[instance_name] and not parameter.has_default
        ]
        if unbound:
            raise DanglingInput(name, instance_name, unbound)

    for export_name, ref in exports.items():
        if not isinstance(ref, OutputRef):
            raise UnresolvedBinding(name, export_name, "exports must reference an instance output")
        _resolve_output(name, modules, ref)

    instances = {
        instance_name: instantiate(definition, inputs[instance_name], name=instance_name)
        for instance_name, definition in modules.items()
    }

    logger.info(
        "Composition built",
        composition=name,
        instances=list(instances),
        bindings=len(bindings),
        exports=list(exports),
    )

    return Composition(name, instances, list(bindings), exports, region=region)


def _resolve_output(composition: str, modules: Mapping[str, ModuleDefinition], ref: OutputRef):
    definition = modules.get(ref.instance)
    if definition is None:
        raise UnresolvedBinding(
            composition, str(ref), "no such module instance in this composition"
        )

    declaration = definition.output(ref.output)
    if declaration is None:
        raise UnresolvedBinding(
            composition, str(ref), f"module '{definition.kind}' declares no such output"
        )
    return declaration
