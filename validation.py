"""Payload validation for movement and user writes.

Validators return a ``ValidationResult`` instead of raising so callers can
decide how to surface per-field problems.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Generic, Optional, TypeVar

from pydantic import BaseModel, ValidationError as PydanticValidationError

from periods import to_local_naive
from schemas import MovementIn, UserUpdateIn

ModelT = TypeVar("ModelT", bound=BaseModel)


@dataclass(frozen=True)
class FieldError:
    field: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"field": self.field, "message": self.message}


@dataclass
class ValidationResult(Generic[ModelT]):
    success: bool
    data: Optional[ModelT] = None
    errors: list[FieldError] = field(default_factory=list)

    def error_dicts(self) -> list[dict[str, str]]:
        return [err.to_dict() for err in self.errors]


def _field_errors(exc: PydanticValidationError) -> list[FieldError]:
    errors: list[FieldError] = []
    for item in exc.errors():
        loc = [str(part) for part in item.get("loc", ())]
        name = ".".join(loc) if loc else "body"
        errors.append(FieldError(field=name, message=item.get("msg", "Invalid value")))
    return errors


def _validate(model: type[ModelT], payload: object) -> ValidationResult[ModelT]:
    if not isinstance(payload, dict):
        return ValidationResult(
            success=False,
            errors=[FieldError(field="body", message="Expected a JSON object")],
        )
    try:
        data = model.model_validate(payload)
    except PydanticValidationError as exc:
        return ValidationResult(success=False, errors=_field_errors(exc))
    return ValidationResult(success=True, data=data)


def validate_movement(
    payload: object, *, now: datetime, timezone: str = "UTC"
) -> ValidationResult[MovementIn]:
    """Validate a movement creation payload.

    ``now`` (naive, local) becomes the movement date when none is supplied;
    aware datetimes are converted to ``timezone`` and stored naive.
    """
    result = _validate(MovementIn, payload)
    if result.data is None:
        return result
    if result.data.date is None:
        result.data.date = now
        return result
    try:
        result.data.date = to_local_naive(result.data.date, timezone)
    except ValueError:
        return ValidationResult(
            success=False,
            errors=[FieldError(field="date", message="Date is out of range")],
        )
    return result


def validate_user_update(payload: object) -> ValidationResult[UserUpdateIn]:
    return _validate(UserUpdateIn, payload)
