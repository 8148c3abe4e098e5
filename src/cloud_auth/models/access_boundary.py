"""Credential access boundary used to downscope tokens."""

from __future__ import annotations

import json

from pydantic import BaseModel, ConfigDict, Field, field_validator

RULES_SIZE_LIMIT = 10


class AvailabilityCondition(BaseModel):
    """A CEL expression restricting when a rule applies."""
    model_config = ConfigDict(frozen=True)

    expression: str = Field(min_length=1)
    title: str | None = None
    description: str | None = None


class AccessBoundaryRule(BaseModel):
    """Upper bound of permissions on one resource."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    available_resource: str = Field(alias="availableResource", min_length=1)
    available_permissions: tuple[str, ...] = Field(alias="availablePermissions", min_length=1)
    availability_condition: AvailabilityCondition | None = Field(
        default=None, alias="availabilityCondition"
    )

    @field_validator("available_permissions")
    @classmethod
    def _no_empty_permissions(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        for permission in value:
            if not permission:
                raise ValueError("One of the provided available permissions is empty.")
        return value


class CredentialAccessBoundary(BaseModel):
    """Between 1 and 10 access boundary rules."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    rules: tuple[AccessBoundaryRule, ...] = Field(alias="accessBoundaryRules")

    @field_validator("rules")
    @classmethod
    def _rule_count(cls, value: tuple[AccessBoundaryRule, ...]) -> tuple[AccessBoundaryRule, ...]:
        if not value:
            raise ValueError("At least one access boundary rule must be provided.")
        if len(value) > RULES_SIZE_LIMIT:
            raise ValueError(
                f"The provided list has more than {RULES_SIZE_LIMIT} access boundary rules."
            )
        return value

    def to_json(self) -> str:
        """Serialize as the ``options`` payload expected by the STS endpoint."""
        rules = [
            rule.model_dump(by_alias=True, exclude_none=True, mode="json")
            for rule in self.rules
        ]
        return json.dumps({"accessBoundary": {"accessBoundaryRules": rules}})
