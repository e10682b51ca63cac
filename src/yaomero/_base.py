from __future__ import annotations

from typing import TYPE_CHECKING, Any, ClassVar

from pydantic import VERSION, BaseModel, ConfigDict

__all__ = ["_BaseModel", "_FrozenModel"]

# validate_by_name added in pydantic 2.9, populate_by_name deprecated in 2.11
_PYDANTIC_V2_9 = tuple(int(x) for x in VERSION.split(".")[:2]) >= (2, 9)
_by_name_key = "validate_by_name" if _PYDANTIC_V2_9 else "populate_by_name"


class _BaseModel(BaseModel):
    model_config: ClassVar[ConfigDict] = ConfigDict(
        extra="ignore",
        validate_assignment=True,
        validate_default=True,
        arbitrary_types_allowed=True,
        **{_by_name_key: True},  # type: ignore[typeddict-item]
    )

    if not TYPE_CHECKING:
        # server payloads use aliases like "@id"; dump by field name by default
        def model_dump(self, **kwargs: Any) -> dict[str, Any]:  # pragma: no cover
            kwargs.setdefault("by_alias", False)
            return super().model_dump(**kwargs)


class _FrozenModel(_BaseModel):
    """Immutable, hashable model.

    Used for values that act as identities (cache keys, remote entities) and
    must never be mutated once created.
    """

    model_config: ClassVar[ConfigDict] = ConfigDict(
        frozen=True, validate_assignment=False
    )
