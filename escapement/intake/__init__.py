"""
Intake module for the escapement project.

Parses declarative resource documents into the Resource Model and validates
them before graph building.
"""

from .parser import Parser, ParseError, parse_attribute, parse_dependency
from .validator import ValidationResult, Validator, validate_resources

__all__ = [
    "Parser",
    "ParseError",
    "parse_attribute",
    "parse_dependency",
    "ValidationResult",
    "Validator",
    "validate_resources",
]
