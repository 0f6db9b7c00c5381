"""JSON Schema to pydantic translation.

MCP servers describe tool inputs with JSON Schema. This module turns those
descriptions into pydantic models so that arguments produced by the model
can be validated before a tool is invoked.

Only a closed set of schema kinds is understood (string, number, integer,
boolean, object, array) together with enums, inclusive numeric bounds and
the ``date-time``, ``email`` and ``uri`` string formats. Anything else
degrades to a permissive type; translation itself never fails.
"""

import keyword
import re
from typing import Annotated, Any, Literal, Optional

from pydantic import (
    AfterValidator,
    AnyUrl,
    AwareDatetime,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    EmailStr,
    Field,
    TypeAdapter,
    ValidationError,
    create_model,
)

_EMAIL_ADAPTER = TypeAdapter(EmailStr)
_URL_ADAPTER = TypeAdapter(AnyUrl)
_DATE_TIME_ADAPTER = TypeAdapter(AwareDatetime)

_SCALAR_ENUM_TYPES = (str, int, bool, type(None))

# RFC 3339 date-time: full date, full time with seconds, and an offset
_DATE_TIME_SHAPE = re.compile(
    r"^\d{4}-\d{2}-\d{2}[Tt ]\d{2}:\d{2}:\d{2}(\.\d+)?([Zz]|[+-]\d{2}:\d{2})$"
)


def _check_date_time(value: str) -> str:
    if not _DATE_TIME_SHAPE.match(value):
        raise ValueError(f"invalid date-time: {value!r}")
    try:
        _DATE_TIME_ADAPTER.validate_python(value)
    except ValidationError:
        raise ValueError(f"invalid date-time: {value!r}")
    return value


def _check_email(value: str) -> str:
    try:
        _EMAIL_ADAPTER.validate_python(value)
    except ValidationError:
        raise ValueError(f"invalid email address: {value!r}")
    return value


def _check_uri(value: str) -> str:
    try:
        _URL_ADAPTER.validate_python(value)
    except ValidationError:
        raise ValueError(f"invalid uri: {value!r}")
    return value


FORMAT_VALIDATORS = {
    "date-time": _check_date_time,
    "email": _check_email,
    "uri": _check_uri,
}


def _reject_bool(value: Any) -> Any:
    if isinstance(value, bool):
        raise ValueError("boolean is not a valid number")
    return value


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _enum_literal(values: Any) -> Optional[Any]:
    """Build a Literal type from an enum list, or None if unusable."""
    if not isinstance(values, list):
        return None
    members = []
    for value in values:
        if isinstance(value, _SCALAR_ENUM_TYPES) and value not in members:
            members.append(value)
    if not members:
        return None
    return Literal[tuple(members)]


def _string_type(node: dict[str, Any]) -> Any:
    literal = _enum_literal(node.get("enum"))
    if literal is not None:
        return literal

    check = FORMAT_VALIDATORS.get(node.get("format"))
    if check is not None:
        return Annotated[str, AfterValidator(check)]
    return str


def _numeric_type(node: dict[str, Any], base: type) -> Any:
    literal = _enum_literal(node.get("enum"))
    if literal is not None:
        return literal

    bounds: dict[str, Any] = {}
    if _is_number(node.get("minimum")):
        bounds["ge"] = node["minimum"]
    if _is_number(node.get("maximum")):
        bounds["le"] = node["maximum"]

    if bounds:
        return Annotated[base, BeforeValidator(_reject_bool), Field(**bounds)]
    return Annotated[base, BeforeValidator(_reject_bool)]


def _array_type(node: dict[str, Any], name: str) -> Any:
    items = node.get("items")
    if not isinstance(items, dict):
        return list[Any]

    item_type = translate_schema(items, name=f"{name}Item")
    description = items.get("description")
    if isinstance(description, str) and description:
        item_type = Annotated[item_type, Field(description=description)]
    return list[item_type]


def _is_safe_name(key: str) -> bool:
    return (
        key.isidentifier()
        and not keyword.iskeyword(key)
        and not key.startswith("_")
        and not key.startswith("model_")
        and not hasattr(BaseModel, key)
    )


def _field_names(keys: list[str]) -> dict[str, str]:
    """Map schema property names to unique Python-safe attribute names."""
    taken = {key for key in keys if _is_safe_name(key)}
    names = {}
    for index, key in enumerate(keys):
        if _is_safe_name(key):
            names[key] = key
            continue
        attr = f"field_{index}"
        while attr in taken:
            attr += "_"
        taken.add(attr)
        names[key] = attr
    return names


def _object_type(
    node: Optional[dict[str, Any]],
    name: str,
    required: Optional[set[str]] = None,
) -> type[BaseModel]:
    properties = node.get("properties") if isinstance(node, dict) else None
    if not isinstance(properties, dict):
        # No declared shape: nothing is required and extra keys pass through
        return create_model(name, __config__=ConfigDict(extra="allow"))

    if required is None:
        declared = node.get("required")
        required = {r for r in declared if isinstance(r, str)} if isinstance(declared, list) else set()

    attrs = _field_names(list(properties))
    fields: dict[str, Any] = {}
    for key, prop in properties.items():
        prop = prop if isinstance(prop, dict) else {}
        attr = attrs[key]
        annotation = translate_schema(prop, name=f"{name}_{attr}")

        field_kwargs: dict[str, Any] = {}
        description = prop.get("description")
        if isinstance(description, str) and description:
            field_kwargs["description"] = description

        if attr != key:
            field_kwargs["alias"] = key

        # Optional properties default to None but stay unset, so they are
        # dropped again by exclude_unset when arguments are dumped.
        default = ... if key in required else None
        fields[attr] = (annotation, Field(default, **field_kwargs))

    return create_model(
        name,
        __config__=ConfigDict(populate_by_name=True),
        **fields,
    )


def translate_schema(
    node: Any,
    required: Optional[set[str]] = None,
    name: str = "Schema",
) -> Any:
    """
    Translate one JSON Schema node into a pydantic-compatible type.

    Args:
        node: JSON Schema node (a dict); anything else is treated as untyped
        required: Required property names for object nodes; defaults to the
            node's own ``required`` list
        name: Model name used when the node is an object

    Returns:
        A type annotation usable as a pydantic field type
    """
    if not isinstance(node, dict):
        return Any

    kind = node.get("type")
    if kind == "string":
        return _string_type(node)
    if kind == "number":
        return _numeric_type(node, float)
    if kind == "integer":
        return _numeric_type(node, int)
    if kind == "boolean":
        return bool
    if kind == "object":
        return _object_type(node, name, required)
    if kind == "array":
        return _array_type(node, name)
    return Any


def build_input_model(name: str, schema: Optional[dict[str, Any]]) -> type[BaseModel]:
    """
    Build the validated-input model for a tool.

    The top-level input schema is always treated as an object; a missing
    schema or one without properties yields an empty model.
    """
    model_name = "".join(part.capitalize() for part in _split_name(name)) + "Input"
    return _object_type(schema if isinstance(schema, dict) else None, model_name)


def _split_name(name: str) -> list[str]:
    parts = [p for p in "".join(c if c.isalnum() else " " for c in name).split() if p]
    return parts or ["Tool"]


def validate_arguments(model: type[BaseModel], arguments: Any) -> dict[str, Any]:
    """
    Validate arguments against an input model.

    Args:
        model: Model produced by ``build_input_model``
        arguments: Raw arguments from the model's tool call

    Returns:
        JSON-compatible arguments holding only the keys that were supplied

    Raises:
        pydantic.ValidationError: If the arguments do not satisfy the model
    """
    instance = model.model_validate(arguments if arguments is not None else {})
    return instance.model_dump(mode="json", by_alias=True, exclude_unset=True)


def format_validation_errors(error: ValidationError) -> list[str]:
    """Flatten a pydantic validation error into readable messages."""
    messages = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ()))
        messages.append(f"{location}: {item['msg']}" if location else item["msg"])
    return messages
