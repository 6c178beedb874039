from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, TypeVar

import orjson
from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

ConfigT = TypeVar("ConfigT", bound=BaseModel)


def _field_keys(model: type[BaseModel]) -> dict[str, str]:
    """Maps every accepted input key (field name or alias) to the field name."""
    keys: dict[str, str] = {}
    for name, field in model.model_fields.items():
        keys[name] = name
        if field.alias:
            keys[field.alias] = name
    return keys


def parse_config(
    config_json: str,
    defaults: ConfigT,
    resolve_model: Callable[[dict[str, Any]], type[BaseModel]] | None = None,
) -> ConfigT:
    """
    Overlays a JSON object onto `defaults`, one field at a time.

    Empty or malformed input yields `defaults` unchanged. Unknown keys are dropped
    and a value that does not validate for its field keeps the default for that
    field. `resolve_model` picks the model class from the merged payload, which
    lets a tagged config switch variants.
    """
    if not config_json:
        return defaults
    try:
        raw = orjson.loads(config_json)
    except orjson.JSONDecodeError:
        logger.warning("Cannot parse config, using defaults", extra={"config": config_json})
        return defaults
    if not isinstance(raw, dict):
        logger.warning("Config is not a JSON object, using defaults", extra={"config": config_json})
        return defaults

    model: type[BaseModel] = type(defaults)
    merged: dict[str, Any] = defaults.model_dump()
    if resolve_model is not None:
        model = resolve_model({**merged, **raw})
        if model is not type(defaults):
            # Start from the variant's own defaults, carrying over the shared values.
            merged, _ = _overlay(model, model().model_dump(), merged)

    keys = _field_keys(model)
    merged, rejected = _overlay(
        model, merged, {keys[key]: value for key, value in raw.items() if key in keys}
    )
    for name, value in rejected.items():
        logger.warning("Ignoring invalid config value", extra={"field": name, "value": value})
    return model.model_validate(merged)  # type: ignore[return-value]


def _overlay(
    model: type[BaseModel], base: dict[str, Any], values: dict[str, Any]
) -> tuple[dict[str, Any], dict[str, Any]]:
    """
    Applies each value on top of `base` only if the model still validates with it.
    Returns the merged payload and the values that were turned down.
    """
    merged = dict(base)
    rejected: dict[str, Any] = {}
    for name, value in values.items():
        if name not in model.model_fields:
            continue
        try:
            model.model_validate({**merged, name: value})
        except ValidationError:
            rejected[name] = value
            continue
        merged[name] = value
    return merged, rejected
