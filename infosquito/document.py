"""Search documents for data objects and collections, and how they compare."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any


def _string(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"field {key!r} must be a string, got {type(value).__name__}")
    return value


def _integer(data: dict[str, Any], key: str) -> int:
    value = data.get(key)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"field {key!r} must be an integer, got {type(value).__name__}")
    return value


def _object(value: Any, what: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"{what} must be an object, got {type(value).__name__}")
    return value


def _array(value: Any, what: str) -> list[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"{what} must be an array, got {type(value).__name__}")
    return value


@dataclass(frozen=True)
class Metadatum:
    """A single attribute/value/unit triple."""

    attribute: str = ""
    value: str = ""
    unit: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> Metadatum:
        data = _object(data, "metadatum")
        return cls(_string(data, "attribute"), _string(data, "value"), _string(data, "unit"))

    def to_dict(self) -> dict[str, str]:
        return {"attribute": self.attribute, "value": self.value, "unit": self.unit}


@dataclass(frozen=True)
class UserPermission:
    """A single user's permission on an object."""

    user: str = ""
    permission: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> UserPermission:
        data = _object(data, "user permission")
        return cls(_string(data, "user"), _string(data, "permission"))

    def to_dict(self) -> dict[str, str]:
        return {"user": self.user, "permission": self.permission}


@dataclass
class BothMetadata:
    """Metadata from the data store and from the discovery environment."""

    irods: list[Metadatum] = field(default_factory=list)
    cyverse: list[Metadatum] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> BothMetadata:
        data = _object(data, "metadata")
        return cls(
            irods=[Metadatum.from_dict(m) for m in _array(data.get("irods"), "irods metadata")],
            cyverse=[Metadatum.from_dict(m) for m in _array(data.get("cyverse"), "cyverse metadata")],
        )

    def to_dict(self) -> dict[str, list[dict[str, str]]]:
        return {
            "irods": [m.to_dict() for m in self.irods],
            "cyverse": [m.to_dict() for m in self.cyverse],
        }


def _encode(value: Any) -> str:
    text = json.dumps(value, ensure_ascii=False, separators=(",", ":"))
    for char, escape in (
        ("<", "\\u003c"),
        (">", "\\u003e"),
        ("&", "\\u0026"),
        ("\u2028", "\\u2028"),
        ("\u2029", "\\u2029"),
    ):
        text = text.replace(char, escape)
    return text


@dataclass
class ElasticsearchDocument:
    """The indexed form of a data object or collection."""

    doc_type: str = ""
    id: str = ""
    path: str = ""
    label: str = ""
    creator: str = ""
    file_type: str = ""
    date_created: int = 0
    date_modified: int = 0
    file_size: int = 0
    metadata: BothMetadata = field(default_factory=BothMetadata)
    user_permissions: list[UserPermission] = field(default_factory=list)

    def equal(self, other: ElasticsearchDocument) -> bool:
        """Whether two documents are equivalent; list fields compare as sets."""
        return (
            self.date_modified == other.date_modified
            and self.file_size == other.file_size
            and self.path == other.path
            and self.label == other.label
            and self.id == other.id
            and self.creator == other.creator
            and self.file_type == other.file_type
            and self.date_created == other.date_created
            and set(self.metadata.irods) == set(other.metadata.irods)
            and set(self.metadata.cyverse) == set(other.metadata.cyverse)
            and set(self.user_permissions) == set(other.user_permissions)
        )

    @classmethod
    def from_dict(cls, data: Any) -> ElasticsearchDocument:
        """Build a document from decoded JSON; raises ValueError on bad field types."""
        data = _object(data, "document")
        return cls(
            doc_type=_string(data, "doc_type"),
            id=_string(data, "id"),
            path=_string(data, "path"),
            label=_string(data, "label"),
            creator=_string(data, "creator"),
            file_type=_string(data, "fileType"),
            date_created=_integer(data, "dateCreated"),
            date_modified=_integer(data, "dateModified"),
            file_size=_integer(data, "fileSize"),
            metadata=BothMetadata.from_dict(data.get("metadata")),
            user_permissions=[
                UserPermission.from_dict(p)
                for p in _array(data.get("userPermissions"), "userPermissions")
            ],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "doc_type": self.doc_type,
            "id": self.id,
            "path": self.path,
            "label": self.label,
            "creator": self.creator,
            "fileType": self.file_type,
            "dateCreated": self.date_created,
            "dateModified": self.date_modified,
            "fileSize": self.file_size,
            "metadata": self.metadata.to_dict(),
            "userPermissions": [p.to_dict() for p in self.user_permissions],
        }

    def to_json(self) -> str:
        """Compact JSON encoding of the document."""
        return _encode(self.to_dict())