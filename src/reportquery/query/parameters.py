"""Report parameters: declarations, validation and ``{{name}}`` placeholders."""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any

from reportquery.services.errors import Violation

PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")
_TRUE_TEXT = frozenset({"true", "1", "yes", "y", "on"})
_FALSE_TEXT = frozenset({"false", "0", "no", "n", "off"})


class ParameterType(StrEnum):
    """Declared type of a report parameter."""

    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    ARRAY = "array"


class ParameterTransform(StrEnum):
    """Conversions applied to a parameter value before it is bound."""

    DAYS_TO_TIMESTAMP = "days_to_timestamp"
    HOURS_TO_TIMESTAMP = "hours_to_timestamp"


@dataclass(frozen=True)
class ParameterDefinition:
    """Declared parameter of a report template."""

    type: ParameterType = ParameterType.STRING
    required: bool = False
    default: Any = None
    minimum: float | None = None
    maximum: float | None = None
    pattern: str | None = None
    choices: tuple[Any, ...] = ()
    transform: ParameterTransform | None = None
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        """
        Serialize the declaration in request form.

        Returns
        -------
        dict[str, Any]
            Mapping accepted by :func:`parse_parameter_definitions`.
        """
        payload: dict[str, Any] = {"type": self.type.value, "required": self.required}
        if self.default is not None:
            payload["default"] = self.default
        validation: dict[str, Any] = {}
        if self.minimum is not None:
            validation["min"] = self.minimum
        if self.maximum is not None:
            validation["max"] = self.maximum
        if self.pattern is not None:
            validation["pattern"] = self.pattern
        if self.choices:
            validation["enum"] = list(self.choices)
        if validation:
            payload["validation"] = validation
        if self.transform is not None:
            payload["transform"] = self.transform.value
        if self.description:
            payload["description"] = self.description
        return payload


_TRANSFORM_ALIASES = {
    "daystotimestamp": ParameterTransform.DAYS_TO_TIMESTAMP,
    "hourstotimestamp": ParameterTransform.HOURS_TO_TIMESTAMP,
}


def parse_parameter_definitions(
    raw: object,
) -> tuple[dict[str, ParameterDefinition], list[Violation]]:
    """
    Parse ``parameterDefinitions`` from a raw request.

    Parameters
    ----------
    raw:
        Mapping of parameter name to declaration, or ``None``.

    Returns
    -------
    tuple[dict[str, ParameterDefinition], list[Violation]]
        Parsed declarations and any problems with them.
    """
    if raw is None:
        return {}, []
    if not isinstance(raw, Mapping):
        return {}, [
            Violation("parameter_definitions_invalid", "parameterDefinitions", "must be an object")
        ]
    definitions: dict[str, ParameterDefinition] = {}
    violations: list[Violation] = []
    for name, spec in raw.items():
        path = f"parameterDefinitions.{name}"
        if not isinstance(spec, Mapping):
            violations.append(Violation("parameter_definition_invalid", path, "must be an object"))
            continue
        try:
            param_type = ParameterType(str(spec.get("type", "string")).lower())
        except ValueError:
            violations.append(
                Violation(
                    "parameter_definition_invalid",
                    f"{path}.type",
                    f"Unknown parameter type: {spec.get('type')!r}",
                )
            )
            continue
        transform: ParameterTransform | None = None
        raw_transform = spec.get("transform")
        if raw_transform is not None:
            key = str(raw_transform).replace("_", "").lower()
            transform = _TRANSFORM_ALIASES.get(key)
            if transform is None:
                violations.append(
                    Violation(
                        "parameter_definition_invalid",
                        f"{path}.transform",
                        f"Unknown transform: {raw_transform!r}",
                    )
                )
                continue
        validation = spec.get("validation") or {}
        definitions[str(name)] = ParameterDefinition(
            type=param_type,
            required=bool(spec.get("required", False)),
            default=spec.get("default"),
            minimum=validation.get("min"),
            maximum=validation.get("max"),
            pattern=validation.get("pattern"),
            choices=tuple(validation.get("enum") or ()),
            transform=transform,
            description=str(spec.get("description", "")),
        )
    return definitions, violations


def _coerce(name: str, spec: ParameterDefinition, value: Any) -> Any:  # noqa: C901, PLR0911
    if spec.type is ParameterType.NUMBER:
        if isinstance(value, bool):
            message = f"Parameter {name} must be a number"
            raise ValueError(message)
        if isinstance(value, (int, float)):
            return value
        try:
            text = str(value).strip()
            return int(text) if re.fullmatch(r"-?\d+", text) else float(text)
        except ValueError as exc:
            message = f"Parameter {name} must be a number"
            raise ValueError(message) from exc
    if spec.type is ParameterType.BOOLEAN:
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE_TEXT:
            return True
        if text in _FALSE_TEXT:
            return False
        message = f"Parameter {name} must be a boolean"
        raise ValueError(message)
    if spec.type is ParameterType.DATE:
        if isinstance(value, datetime):
            return value
        try:
            return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError as exc:
            message = f"Parameter {name} must be an ISO date"
            raise ValueError(message) from exc
    if spec.type is ParameterType.ARRAY:
        if isinstance(value, (list, tuple)):
            return list(value)
        message = f"Parameter {name} must be an array"
        raise ValueError(message)
    if not isinstance(value, str):
        message = f"Parameter {name} must be a string"
        raise ValueError(message)
    return value


def _check_rules(name: str, spec: ParameterDefinition, value: Any) -> list[str]:
    problems: list[str] = []
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if spec.minimum is not None and value < spec.minimum:
            problems.append(f"Parameter {name} must be >= {spec.minimum}")
        if spec.maximum is not None and value > spec.maximum:
            problems.append(f"Parameter {name} must be <= {spec.maximum}")
    if spec.pattern is not None and isinstance(value, str) and not re.search(spec.pattern, value):
        problems.append(f"Parameter {name} does not match pattern {spec.pattern}")
    if spec.choices and value not in spec.choices:
        allowed = ", ".join(str(choice) for choice in spec.choices)
        problems.append(f"Parameter {name} must be one of: {allowed}")
    return problems


@dataclass(frozen=True)
class ParameterCheck:
    """Outcome of checking supplied parameter values against their declarations."""

    values: dict[str, Any]
    violations: tuple[Violation, ...] = ()
    warnings: tuple[str, ...] = ()


def check_parameters(
    definitions: Mapping[str, ParameterDefinition],
    supplied: Mapping[str, Any],
    referenced: set[str],
) -> ParameterCheck:
    """
    Validate supplied values, apply defaults and report missing parameters.

    Parameters
    ----------
    definitions:
        Declared parameters.
    supplied:
        Values from the request (after any overrides were merged).
    referenced:
        Parameter names used by ``{{name}}`` placeholders.

    Returns
    -------
    ParameterCheck
        Effective values (supplied or default, coerced), violations and
        warnings for values nobody declared or referenced.
    """
    values: dict[str, Any] = {}
    violations: list[Violation] = []
    warnings: list[str] = []
    for name, spec in definitions.items():
        path = f"parameters.{name}"
        raw = supplied.get(name)
        if raw is None:
            if spec.default is not None:
                raw = spec.default
            elif spec.required:
                violations.append(
                    Violation("parameter_missing", path, f"Required parameter missing: {name}")
                )
                continue
            else:
                continue
        try:
            value = _coerce(name, spec, raw)
        except ValueError as exc:
            violations.append(Violation("parameter_invalid", path, str(exc)))
            continue
        problems = _check_rules(name, spec, value)
        violations.extend(Violation("parameter_invalid", path, p) for p in problems)
        if not problems:
            values[name] = value
    for name, raw in supplied.items():
        if name in definitions:
            continue
        values[name] = raw
        if name not in referenced:
            warnings.append(f"Unexpected parameter: {name}")
    for name in sorted(referenced):
        if name not in values and not any(v.path == f"parameters.{name}" for v in violations):
            violations.append(
                Violation(
                    "parameter_missing",
                    f"parameters.{name}",
                    f"Required parameter missing: {name}",
                )
            )
    return ParameterCheck(values=values, violations=tuple(violations), warnings=tuple(warnings))


def placeholders_in(value: Any) -> set[str]:
    """
    Return parameter names referenced by ``{{name}}`` placeholders in a value.

    Returns
    -------
    set[str]
        Referenced parameter names.
    """
    if isinstance(value, str):
        return set(PLACEHOLDER.findall(value))
    if isinstance(value, (list, tuple)):
        names: set[str] = set()
        for item in value:
            names |= placeholders_in(item)
        return names
    return set()


def apply_transform(
    spec: ParameterDefinition | None, value: Any, *, now: datetime
) -> Any:
    """
    Apply a declared transform (e.g. days -> cutoff timestamp).

    Returns
    -------
    Any
        Transformed value, or ``value`` unchanged when no transform applies.
    """
    if spec is None or spec.transform is None:
        return value
    amount = float(value)
    if spec.transform is ParameterTransform.DAYS_TO_TIMESTAMP:
        return now - timedelta(days=amount)
    return now - timedelta(hours=amount)


def substitute(
    value: Any,
    values: Mapping[str, Any],
    definitions: Mapping[str, ParameterDefinition],
    *,
    now: datetime,
) -> Any:
    """
    Replace ``{{name}}`` placeholders in a filter value.

    A value that is exactly one placeholder takes the parameter's typed value;
    placeholders embedded in longer strings are interpolated as text.

    Returns
    -------
    Any
        Value with placeholders resolved.

    Raises
    ------
    KeyError
        If a referenced parameter has no value.
    """
    if isinstance(value, (list, tuple)):
        return type(value)(substitute(item, values, definitions, now=now) for item in value)
    if not isinstance(value, str):
        return value
    whole = PLACEHOLDER.fullmatch(value.strip())
    if whole is not None:
        name = whole.group(1)
        return apply_transform(definitions.get(name), values[name], now=now)

    def _interpolate(match: re.Match[str]) -> str:
        name = match.group(1)
        return str(apply_transform(definitions.get(name), values[name], now=now))

    return PLACEHOLDER.sub(_interpolate, value)
