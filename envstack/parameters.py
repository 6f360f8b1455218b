"""
Parameter Store

Holds declared parameters and their per-environment values (region, CIDR
ranges, zone lists, node counts). A store is sealed once compositions have
been built from it; after that it is read-only.
"""

import copy
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

import yaml

from .errors import ConfigurationError, TypeMismatch, UndefinedParameter
from .logging import get_logger
from .types import EnvironmentName, Parameter, ParameterType

logger = get_logger(__name__)


class ParameterStore:
    """Per-environment parameter values backed by typed declarations."""

    def __init__(self, declarations: Iterable[Parameter] = ()):
        self._declarations: Dict[str, Parameter] = {}
        self._values: Dict[EnvironmentName, Dict[str, Any]] = {}
        self._sealed = False
        self._lock = threading.Lock()

        for parameter in declarations:
            self.declare(parameter)

    def declare(self, parameter: Parameter) -> None:
        """Declare a parameter. Redeclaring an existing name replaces it."""
        self._check_writable()
        self._declarations[parameter.name] = parameter

    def set(self, environment: EnvironmentName, name: str, value: Any) -> None:
        """Set an explicit value for one environment.

        Raises:
            UndefinedParameter: If ``name`` was never declared
            TypeMismatch: If ``value`` does not match the declared type
        """
        self._check_writable()

        parameter = self._declarations.get(name)
        if parameter is None:
            raise UndefinedParameter(environment, name, reason="not declared")

        if not parameter.type.accepts(value):
            raise TypeMismatch(name, parameter.type.value, value, environment=environment)

        if isinstance(value, tuple):
            value = list(value)

        with self._lock:
            self._values.setdefault(environment, {})[name] = copy.deepcopy(value)

    def add_environment(self, environment: EnvironmentName, values: Mapping[str, Any]) -> None:
        """Register an environment, with all of its explicit values."""
        self._check_writable()
        with self._lock:
            self._values.setdefault(environment, {})
        for name, value in values.items():
            self.set(environment, name, value)

    def get(self, environment: EnvironmentName, name: str) -> Any:
        """Return the value of ``name`` for ``environment``.

        Explicit values win over declared defaults. The returned value is a
        copy, so callers cannot mutate the store through it.

        Raises:
            UndefinedParameter: If no explicit value and no default exist
        """
        env_values = self._values.get(environment, {})
        if name in env_values:
            return copy.deepcopy(env_values[name])

        parameter = self._declarations.get(name)
        if parameter is not None and parameter.has_default:
            return parameter.default_value()

        raise UndefinedParameter(environment, name)

    def environments(self) -> List[EnvironmentName]:
        """Environments that have been registered, in registration order."""
        return list(self._values)

    def has_environment(self, environment: EnvironmentName) -> bool:
        return environment in self._values

    def declarations(self) -> List[Parameter]:
        return list(self._declarations.values())

    def seal(self) -> None:
        """Make the store read-only."""
        if not self._sealed:
            self._sealed = True
            logger.debug("Parameter store sealed", environments=self.environments())

    @property
    def sealed(self) -> bool:
        return self._sealed

    def _check_writable(self) -> None:
        if self._sealed:
            raise ConfigurationError(
                "parameter_store", "sealed", "unsealed store",
                reason="parameters are read-only once compositions are built",
            )

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ParameterStore":
        """Build a store from a ``{"parameters": ..., "environments": ...}`` mapping.

        Declarations look like ``{"node_count": {"type": "number", "default": 2}}``.
        """
        store = cls()

        for name, spec in (data.get("parameters") or {}).items():
            spec = spec or {}
            try:
                param_type = ParameterType(spec.get("type", "string"))
            except ValueError:
                raise ConfigurationError(
                    f"parameters.{name}.type", spec.get("type"),
                    ", ".join(t.value for t in ParameterType),
                )

            kwargs = {"name": name, "type": param_type, "description": spec.get("description", "")}
            if "default" in spec:
                kwargs["default"] = spec["default"]
            try:
                store.declare(Parameter(**kwargs))
            except ValueError as e:
                raise ConfigurationError(f"parameters.{name}", spec, str(e))

        for environment, values in (data.get("environments") or {}).items():
            store.add_environment(str(environment), values or {})

        logger.info(
            "Parameter store loaded",
            parameters=len(store._declarations),
            environments=store.environments(),
        )
        return store

    @classmethod
    def from_file(cls, path: str) -> "ParameterStore":
        """Load a store from a YAML or JSON parameters file."""
        file_path = Path(path)
        if not file_path.exists():
            raise ConfigurationError("parameters_file", path, "an existing file")

        with open(file_path, "r") as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigurationError("parameters_file", path, "valid YAML or JSON", error=str(e))

        if not isinstance(data, dict):
            raise ConfigurationError("parameters_file", path, "a mapping at the top level")

        return cls.from_mapping(data)


def load_parameter_store(path: Optional[str] = None) -> ParameterStore:
    """Load ``path`` if given, otherwise the built-in dev/stage/prod parameters."""
    if path:
        return ParameterStore.from_file(path)

    from .environments import default_parameter_store

    return default_parameter_store()
