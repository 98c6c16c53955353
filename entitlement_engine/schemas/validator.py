# entitlement_engine/schemas/validator.py
from __future__ import annotations
import json
from pathlib import Path
from typing import Dict

from jsonschema import Draft202012Validator

from entitlement_engine.domain.errors import EventValidationError

_schema_cache: Dict[str, Draft202012Validator] = {}


def _load_schema(name: str) -> Draft202012Validator:
    cached = _schema_cache.get(name)
    if cached is not None:
        return cached

    schema_path = Path(__file__).with_name(f"{name}_schema.json")

    try:
        schema_text = schema_path.read_text(encoding="utf-8")
        schema_dict = json.loads(schema_text)
    except (OSError, ValueError) as e:
        raise RuntimeError(f"Failed to load schema '{name}': {e}") from e

    Draft202012Validator.check_schema(schema_dict)
    _schema_cache[name] = Draft202012Validator(schema_dict)
    return _schema_cache[name]


def _validate(name: str, body: object) -> None:
    validator = _load_schema(name)
    errors = sorted(validator.iter_errors(body), key=lambda e: list(e.path))
    if errors:
        first = errors[0]
        loc = "/".join(str(p) for p in first.path) or "(root)"
        raise EventValidationError(f"Schema validation failed at {loc}: {first.message}")


def validate_billing_envelope(body: object) -> None:
    """Structural check of {type, payload, meta, version}; field typing is left to the event models."""
    _validate("billing_event", body)


def validate_usage_event(body: object) -> None:
    _validate("usage_event", body)


def validate_product(body: object) -> None:
    _validate("product", body)
