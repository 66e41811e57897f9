"""
Validation for the Resource Model.

Checks a ResourceSet before any graph building or planning:
- every reference and depends_on entry points at a declared resource
- no resource depends on itself
- resource types are known to the provider registry (when one is given)
- names are valid identifiers

Cycle detection lives in the graph builder.
"""

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field

from ..errors import ValidationError
from ..models import Reference, ResourceSet

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]*$")


@dataclass
class ValidationResult:
    """Collected validation errors for one ResourceSet."""

    errors: list[ValidationError] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    def add(self, error: ValidationError) -> None:
        self.errors.append(error)

    def raise_for_errors(self) -> None:
        """Raise a single ValidationError describing every problem found."""
        if not self.errors:
            return
        if len(self.errors) == 1:
            raise self.errors[0]
        details = "\n".join(f"  - {e}" for e in self.errors)
        raise ValidationError(f"{len(self.errors)} validation errors:\n{details}")


class Validator:
    """Validator for declared resources."""

    def __init__(self, known_types: Iterable[str] | None = None):
        """
        Args:
            known_types: Resource types the provider registry can handle; None skips the check
        """
        self.known_types = set(known_types) if known_types is not None else None

    def validate(self, resources: ResourceSet) -> ValidationResult:
        result = ValidationResult()

        for key, resource in resources.items():
            address = str(key)

            for part in (resource.type, resource.name):
                if not _IDENTIFIER.match(part):
                    result.add(ValidationError(f"invalid identifier '{part}'", key=address, file_path=resource.source))

            if self.known_types is not None and resource.type not in self.known_types:
                result.add(
                    ValidationError(
                        f"unknown resource type '{resource.type}'",
                        key=address,
                        file_path=resource.source,
                    )
                )

            for attr_name, value in sorted(resource.attributes.items()):
                if not isinstance(value, Reference):
                    continue
                if value.key == key:
                    result.add(
                        ValidationError(f"attribute '{attr_name}' references its own resource", key=address, file_path=resource.source)
                    )
                elif value.key not in resources:
                    result.add(
                        ValidationError(
                            f"attribute '{attr_name}' references undeclared resource '{value.key}'",
                            key=address,
                            file_path=resource.source,
                        )
                    )

            for dependency in resource.depends_on:
                if dependency == key:
                    result.add(ValidationError("depends_on lists the resource itself", key=address, file_path=resource.source))
                elif dependency not in resources:
                    result.add(
                        ValidationError(
                            f"depends_on references undeclared resource '{dependency}'",
                            key=address,
                            file_path=resource.source,
                        )
                    )

        if result.valid:
            logger.debug(f"Validated {len(resources)} resources")
        else:
            logger.error(f"Validation found {len(result.errors)} error(s)")

        return result


def validate_resources(resources: ResourceSet, known_types: Iterable[str] | None = None) -> None:
    """Validate and raise on the first batch of errors."""
    Validator(known_types).validate(resources).raise_for_errors()
