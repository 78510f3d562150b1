from collections.abc import Callable, Mapping

from jsonschema import Draft7Validator

from bulkloader.errors import RecordValidationError


Validator = Callable[[Mapping[str, object], object], list[str]]


def validate(schema: Mapping[str, object], instance: object) -> list[str]:
    """Return one message per schema violation; empty when the instance is valid."""
    validator = Draft7Validator(schema)
    errors = sorted(validator.iter_errors(instance), key=lambda error: [str(part) for part in error.absolute_path])
    messages: list[str] = []
    for error in errors:
        location = ".".join(str(part) for part in error.absolute_path)
        messages.append(f"{location}: {error.message}" if location else error.message)
    return messages


def ensure_valid(schema: Mapping[str, object], instance: object, name: str, validator: Validator = validate) -> None:
    violations = validator(schema, instance)
    if violations:
        raise RecordValidationError(name, violations)
