"""Versions declared through build properties (Maven `${name}`, MSBuild `$(name)`).

A property may be defined in the file that uses it or in a file it inherits from (a parent POM, a
`Directory.Build.props`). The parser records where the value came from so the updater can rewrite the definition
once, however many declarations use it.
"""

from __future__ import annotations

import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from logging import getLogger
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable

    from .models import DependencyFile, RequirementEntry

log = getLogger(__name__)

PROPERTY_REFERENCE = re.compile(r"^\s*(?:\$\{(?P<maven>[^}]+)\}|\$\((?P<msbuild>[^)]+)\))\s*$")


def strip_namespaces(root: ET.Element) -> ET.Element:
    """Drop the `{namespace}` prefix of every tag so paths can be written without namespaces."""
    for element in root.iter():
        if isinstance(element.tag, str) and element.tag.startswith("{"):
            element.tag = element.tag.split("}", 1)[1]
    return root


def property_reference(value: str | None) -> str | None:
    """The property name if `value` is exactly one property reference."""
    match = PROPERTY_REFERENCE.match(value or "")
    if match is None:
        return None
    return match.group("maven") or match.group("msbuild")


@dataclass(frozen=True)
class PropertyDetails:
    """Where a property is defined and its value."""

    name: str
    value: str
    file: str


def find_property(name: str, documents: Iterable[tuple[DependencyFile, ET.Element]]) -> PropertyDetails | None:
    """Return the first definition of property `name` among `documents`, searched in order.

    Properties live in `<properties>` (Maven) or `<PropertyGroup>` (MSBuild) elements.
    """
    for file, root in documents:
        for group in (*root.iter("properties"), *root.iter("PropertyGroup")):
            node = group.find(name)
            if node is not None and node.text is not None and node.text.strip():
                return PropertyDetails(name, node.text.strip(), file.name)
    log.debug("Property %s is not defined", name)
    return None


def property_metadata(details: PropertyDetails) -> tuple[tuple[str, str], ...]:
    """Requirement entry metadata recording a property-driven version."""
    return (("property_name", details.name), ("property_file", details.file))


def update_property_value(content: str, name: str, old_value: str, new_value: str) -> str:
    """Rewrite the first `<name>old</name>` definition (surrounding whitespace allowed) to `<name>new</name>`."""
    pattern = re.compile(rf"<{re.escape(name)}>\s*{re.escape(old_value)}\s*</{re.escape(name)}>", re.MULTILINE)
    return pattern.sub(f"<{name}>{new_value}</{name}>", content, count=1)


def changed_pairs(
    previous: Iterable[RequirementEntry],
    current: Iterable[RequirementEntry],
) -> list[tuple[RequirementEntry, RequirementEntry]]:
    """Pair each requirement entry with its predecessor (updates keep the order), returning the pairs that differ."""
    return [(old, new) for old, new in zip(previous, current, strict=False) if old != new]
