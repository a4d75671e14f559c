"""
Helpers for the structured documents passed into and out of rules.

Documents are plain JSON-compatible values: None, bool, numbers, strings,
lists and string-keyed dicts.
"""

from typing import Any, Mapping

Document = Any


def is_mapping(value: Document) -> bool:
    return isinstance(value, Mapping)


def merge_documents(base: Document, output: Document) -> Document:
    """Merge a rule's output into the next rule's input.

    Only mapping outputs are merged, with output keys winning. Any other
    output leaves the input unchanged.
    """
    if not is_mapping(output):
        return base
    merged = dict(base) if is_mapping(base) else {}
    merged.update(output)
    return merged


MISSING = object()


def get_path(document: Document, path: str, default: Any = None) -> Any:
    """Read a dotted path such as ``customer.address.country``."""
    if is_mapping(document) and path in document:
        return document[path]

    value = document
    for part in path.split("."):
        if is_mapping(value) and part in value:
            value = value[part]
        elif isinstance(value, list) and part.isdigit() and int(part) < len(value):
            value = value[int(part)]
        else:
            return default
    return value
