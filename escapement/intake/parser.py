"""
HCL Parser for Escapement resource definitions

This module parses declarative resource documents into the Resource Model.
Two syntaxes are accepted, both without executing any code:

- HCL (``*.hcl``), parsed with python-hcl2::

      resource "network" "vpc1" {
        cidr = "10.0.0.0/16"
      }

      resource "subnet" "sub1" {
        vpc_id     = network.vpc1.id
        depends_on = [network.vpc1]
      }

- JSON (``*.hcl.json``) with the same shape, references written as
  ``"${network.vpc1.id}"``.

Only whole-value references of the form ``type.name.attribute`` are
supported; any other interpolation is rejected.
"""

import json
import logging
import re
from pathlib import Path
from typing import Any

import hcl2

from ..errors import ValidationError
from ..models import LiteralValue, Reference, Resource, ResourceKey, ResourceSet

logger = logging.getLogger(__name__)

_IDENT = r"[A-Za-z_][A-Za-z0-9_-]*"
REFERENCE_PATTERN = re.compile(rf"^\$\{{({_IDENT})\.({_IDENT})\.({_IDENT})\}}$")
DEPENDENCY_PATTERN = re.compile(rf"^(?:\$\{{)?({_IDENT})\.({_IDENT})(?:\}})?$")

HCL_SUFFIXES = (".hcl",)
JSON_SUFFIXES = (".hcl.json",)


class ParseError(ValidationError):
    """Exception raised when a document cannot be parsed."""
    pass


def _unquote(value: str) -> str:
    # Some python-hcl2 releases keep the surrounding quotes on labels and strings.
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return value[1:-1]
    return value


def _contains_interpolation(value: Any) -> bool:
    if isinstance(value, str):
        return "${" in value
    if isinstance(value, list):
        return any(_contains_interpolation(v) for v in value)
    if isinstance(value, dict):
        return any(_contains_interpolation(v) for v in value.values())
    return False


def _clean(value: Any) -> Any:
    """Strip parser artefacts (quotes, ``__is_block__`` markers) from a literal."""
    if isinstance(value, str):
        return _unquote(value)
    if isinstance(value, list):
        return [_clean(v) for v in value]
    if isinstance(value, dict):
        return {_unquote(k): _clean(v) for k, v in value.items() if not k.startswith("__")}
    return value


def parse_attribute(value: Any, key: str | None = None, attribute: str | None = None):
    """Turn a raw document value into a LiteralValue or Reference.

    Raises:
        ValidationError: If the value holds an unsupported interpolation
    """
    value = _clean(value)

    if isinstance(value, str):
        match = REFERENCE_PATTERN.match(value)
        if match:
            ref_type, ref_name, ref_attr = match.groups()
            return Reference(key=ResourceKey(ref_type, ref_name), attribute=ref_attr)

    if _contains_interpolation(value):
        raise ValidationError(
            f"malformed attribute '{attribute}': only whole-value references "
            f"of the form type.name.attribute are supported, got {value!r}",
            key=key,
        )

    return LiteralValue(value=value)


def parse_dependency(value: Any, key: str | None = None) -> ResourceKey:
    """Parse one ``depends_on`` entry (``type.name`` or ``${type.name}``)."""
    if isinstance(value, str):
        match = DEPENDENCY_PATTERN.match(_unquote(value))
        if match:
            return ResourceKey(*match.groups())
    raise ValidationError(f"malformed depends_on entry {value!r}, expected type.name", key=key)


class Parser:
    """
    Parser for Escapement resource documents.

    Handles the parsing of HCL and JSON documents into Python dictionaries
    and converts them into Resource objects.
    """

    def __init__(self):
        self.parsed_files: dict[str, dict[str, Any]] = {}

    def parse_file(self, file_path: str | Path) -> dict[str, Any]:
        """
        Parse a single resource document.

        Args:
            file_path: Path to a .hcl or .hcl.json file

        Returns:
            Dictionary representation of the parsed content

        Raises:
            ParseError: If the file cannot be parsed or read
            FileNotFoundError: If the file does not exist
        """
        file_path = Path(file_path)

        if not file_path.exists():
            raise FileNotFoundError(f"Resource file not found: {file_path}")

        try:
            content = file_path.read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            raise ParseError(f"File encoding error: {e}", file_path=str(file_path)) from e

        if file_path.name.endswith(JSON_SUFFIXES):
            parsed_data = self.parse_string(content, fmt="json", source=str(file_path))
        elif file_path.name.endswith(HCL_SUFFIXES):
            parsed_data = self.parse_string(content, fmt="hcl", source=str(file_path))
        else:
            raise ParseError(
                f"Expected .hcl or .hcl.json file, got '{file_path.name}'",
                file_path=str(file_path),
            )

        self.parsed_files[str(file_path)] = parsed_data
        return parsed_data

    def parse_string(self, content: str, fmt: str = "hcl", source: str | None = None) -> dict[str, Any]:
        """
        Parse document content from a string.

        Args:
            content: Document content
            fmt: "hcl" or "json"
            source: Optional origin used in error messages

        Returns:
            Dictionary representation of the parsed content

        Raises:
            ParseError: If the content cannot be parsed
        """
        try:
            if fmt == "json":
                data = json.loads(content)
            elif fmt == "hcl":
                data = hcl2.loads(content)
            else:
                raise ParseError(f"Unknown document format '{fmt}'", file_path=source)
        except ParseError:
            raise
        except Exception as e:
            raise ParseError(f"Invalid {fmt.upper()} syntax: {e}", file_path=source) from e

        if not isinstance(data, dict):
            raise ParseError("Document must be a mapping of blocks", file_path=source)
        return data

    def to_resources(self, parsed_data: dict[str, Any], source: str | None = None) -> list[Resource]:
        """
        Convert parsed document data into Resource objects.

        Args:
            parsed_data: Parsed document as dictionary
            source: Optional file path for context

        Returns:
            List of resources in document order

        Raises:
            ValidationError: If a block or attribute is malformed
        """
        resources: list[Resource] = []

        for block_type, blocks in parsed_data.items():
            block_type = _unquote(block_type)
            if block_type.startswith("__"):
                continue
            if block_type != "resource":
                raise ValidationError(f"Unsupported block type '{block_type}'", file_path=source)

            # HCL yields a list of blocks, JSON usually a single mapping
            if isinstance(blocks, dict):
                blocks = [blocks]

            for block in blocks:
                resources.extend(self._process_resource_block(block, source))

        return resources

    def _process_resource_block(self, block: dict[str, Any], source: str | None) -> list[Resource]:
        """Handle ``{"<type>": {"<name>": {...}}}``."""
        resources = []

        if not isinstance(block, dict):
            raise ValidationError("Malformed resource block", file_path=source)

        for resource_type, instances in block.items():
            if resource_type.startswith("__"):
                continue
            resource_type = _unquote(resource_type)

            if not isinstance(instances, dict):
                raise ValidationError(f"Malformed resource block for type '{resource_type}'", file_path=source)

            for resource_name, body in instances.items():
                if resource_name.startswith("__"):
                    continue
                resource_name = _unquote(resource_name)
                address = f"{resource_type}.{resource_name}"

                # JSON syntax allows a list of bodies; HCL sometimes wraps one
                if isinstance(body, list):
                    if len(body) != 1:
                        raise ValidationError("Resource declared more than once", key=address, file_path=source)
                    body = body[0]
                if not isinstance(body, dict):
                    raise ValidationError("Resource body must be a mapping", key=address, file_path=source)

                resources.append(self._build_resource(resource_type, resource_name, body, source))
                logger.debug(f"Parsed resource: {address}")

        return resources

    def _build_resource(
        self, resource_type: str, resource_name: str, body: dict[str, Any], source: str | None
    ) -> Resource:
        address = f"{resource_type}.{resource_name}"
        attributes = {}
        depends_on: list[ResourceKey] = []

        for attr_name, raw_value in body.items():
            if attr_name.startswith("__"):
                continue
            attr_name = _unquote(attr_name)

            if attr_name == "depends_on":
                raw_deps = raw_value if isinstance(raw_value, list) else [raw_value]
                depends_on = [parse_dependency(dep, key=address) for dep in raw_deps]
                continue

            try:
                attributes[attr_name] = parse_attribute(raw_value, key=address, attribute=attr_name)
            except ValidationError as e:
                raise ValidationError(e.message, key=address, file_path=source) from e

        return Resource(
            type=resource_type,
            name=resource_name,
            attributes=attributes,
            depends_on=depends_on,
            source=source,
        )

    def load_string(self, content: str, fmt: str = "hcl", source: str | None = None) -> ResourceSet:
        """Parse a document string straight into a ResourceSet."""
        return ResourceSet(self.to_resources(self.parse_string(content, fmt, source), source))

    def load(self, path: str | Path) -> ResourceSet:
        """
        Load a file, or every .hcl/.hcl.json file of a directory, into one ResourceSet.

        Args:
            path: File or directory path

        Returns:
            ResourceSet with all declared resources

        Raises:
            FileNotFoundError: If the path does not exist
            ValidationError: If parsing fails or keys are duplicated
        """
        path = Path(path)

        if path.is_dir():
            files = sorted(
                p for p in path.iterdir()
                if p.is_file() and p.name.endswith(HCL_SUFFIXES + JSON_SUFFIXES)
            )
            if not files:
                logger.warning(f"No resource files found in {path}")
        else:
            files = [path]

        resource_set = ResourceSet()
        for file_path in files:
            parsed = self.parse_file(file_path)
            for resource in self.to_resources(parsed, str(file_path)):
                resource_set.add(resource)

        logger.info(f"Loaded {len(resource_set)} resources from {path}")
        return resource_set

    def clear_cache(self):
        """Clear the parsed files cache."""
        self.parsed_files.clear()
