"""Declared parameter schemas for registered APIs.

A schema is compiled once into a pydantic model; invoking an API validates its
parameters against that model and reports one violation per offending parameter.
"""

from typing import Annotated, Any, Callable, Literal, Mapping, Optional, Union

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    StrictStr,
    ValidationError,
    create_model,
)

from aither_core.errors import ParameterValidationError

ParameterType = Literal["string", "int", "float", "number", "bool", "dict", "list", "any"]

# bool is an int subclass; the strict types keep them apart
_ANNOTATIONS: dict[str, Any] = {
    "string": StrictStr,
    "int": StrictInt,
    "float": Union[StrictInt, StrictFloat],
    "number": Union[StrictInt, StrictFloat],
    "bool": StrictBool,
    "dict": dict,
    "list": Union[list, tuple],
    "any": Any,
}

# Aliases accepted from module manifests
_TYPE_ALIASES = {
    "str": "string",
    "integer": "int",
    "boolean": "bool",
    "hashtable": "dict",
    "object": "dict",
    "array": "list",
}


class ParameterSpec(BaseModel):
    """One declared parameter of an API."""

    type: ParameterType = "any"
    required: bool = False
    default: Any = None
    allowed_values: list[Any] | None = None
    description: str = ""


ParameterSchema = dict[str, ParameterSpec]


class _Parameters(BaseModel):
    model_config = ConfigDict(extra="forbid")


def parse_schema(raw: Mapping[str, Any] | None) -> ParameterSchema:
    """Accept ParameterSpec objects or plain dicts (e.g. from manifest.yaml)."""
    schema: ParameterSchema = {}
    for name, spec in (raw or {}).items():
        if isinstance(spec, ParameterSpec):
            schema[name] = spec
            continue
        data = dict(spec or {})
        if "type" in data:
            t = str(data["type"]).lower()
            data["type"] = _TYPE_ALIASES.get(t, t)
        schema[name] = ParameterSpec.model_validate(data)
    return schema


def _one_of(allowed: list[Any]) -> Callable[[Any], Any]:
    def check(value: Any) -> Any:
        if value is not None and value not in allowed:
            raise ValueError(f"must be one of {allowed!r}, got {value!r}")
        return value

    return check


def build_parameter_model(full_name: str, schema: ParameterSchema) -> type[BaseModel] | None:
    """Compile a schema into a model. Parameter names travel as aliases so any key is allowed."""
    if not schema:
        return None
    fields: dict[str, Any] = {}
    for i, (name, spec) in enumerate(schema.items()):
        annotation: Any = _ANNOTATIONS[spec.type]
        if spec.type != "any":
            annotation = Optional[annotation]
        if spec.allowed_values is not None:
            annotation = Annotated[annotation, AfterValidator(_one_of(spec.allowed_values))]
        if spec.required:
            fields[f"p{i}"] = (annotation, Field(alias=name))
        else:
            fields[f"p{i}"] = (annotation, Field(default=spec.default, alias=name))
    model_name = "Params_" + "".join(c if c.isalnum() else "_" for c in full_name)
    return create_model(model_name, __base__=_Parameters, **fields)


def _violation(error: Mapping[str, Any]) -> str:
    name = error["loc"][0] if error["loc"] else "?"
    if error["type"] == "missing":
        return f"missing required parameter '{name}'"
    if error["type"] == "extra_forbidden":
        return f"unknown parameter '{name}'"
    return f"parameter '{name}': {error['msg']}"


def validate_parameters(
    full_name: str,
    schema: ParameterSchema,
    params: Mapping[str, Any] | None,
    model: type[BaseModel] | None = None,
) -> dict[str, Any]:
    """Return params with defaults applied. Raises ParameterValidationError with every violation."""
    given = dict(params or {})
    # schema-less APIs accept anything
    if not schema:
        return given
    if model is None:
        model = build_parameter_model(full_name, schema)
    assert model is not None
    try:
        validated = model.model_validate(given)
    except ValidationError as e:
        seen: set[Any] = set()
        violations = []
        for error in e.errors():
            # union members each report; keep the first per parameter
            key = error["loc"][0] if error["loc"] else None
            if key in seen:
                continue
            seen.add(key)
            violations.append(_violation(error))
        raise ParameterValidationError(full_name, violations) from None

    result: dict[str, Any] = {}
    for field_name, field in type(validated).model_fields.items():
        value = getattr(validated, field_name)
        if field_name in validated.model_fields_set or value is not None:
            result[field.alias or field_name] = value
    return result
