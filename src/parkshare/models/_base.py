"""Base model for parkshare documents.

Every persisted model inherits from :class:`ParkShareBaseModel` which
provides:

* ``alias_generator=to_camel`` so stored documents use camelCase keys
  while Python code uses snake_case attributes.
* ``to_document()`` / ``from_document()`` helpers for the store boundary.
* Translation of pydantic validation failures into
  :class:`~parkshare.exceptions.ParkShareValidationError`.
"""

from __future__ import annotations

from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from parkshare.exceptions import ParkShareValidationError

TModel = TypeVar("TModel", bound="ParkShareBaseModel")


def _field_path(loc: tuple[int | str, ...]) -> str:
    parts = [str(part) for part in loc if str(part)]
    return ".".join(parts) or "__root__"


def to_validation_error(exc: PydanticValidationError) -> ParkShareValidationError:
    """Collapse a pydantic error into the first failing field and its reason."""
    errors = exc.errors(include_url=False)
    if not errors:
        return ParkShareValidationError("__root__", str(exc))
    first = errors[0]
    reason = str(first.get("msg", "invalid value"))
    # ValueError messages raised by our validators come prefixed by pydantic.
    reason = reason.removeprefix("Value error, ")
    return ParkShareValidationError(_field_path(tuple(first.get("loc", ()))), reason)


class ParkShareBaseModel(BaseModel):
    """Base for persisted parkshare models."""

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
    )

    def to_document(self) -> dict[str, Any]:
        """Serialize to a camelCase document, dropping ``id`` and unset optionals."""
        return self.model_dump(by_alias=True, mode="json", exclude_none=True, exclude={"id"})

    @classmethod
    def from_document(cls: type[TModel], doc_id: str, data: dict[str, Any]) -> TModel:
        """Build a model from a stored document and its id."""
        return cls.model_validate({**data, "id": doc_id})

    @classmethod
    def coerce(cls: type[TModel], values: Any) -> TModel:
        """Validate *values*, raising :class:`ParkShareValidationError` on failure."""
        if isinstance(values, cls):
            return values
        try:
            return cls.model_validate(values)
        except PydanticValidationError as exc:
            raise to_validation_error(exc) from exc
