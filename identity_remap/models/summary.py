from __future__ import annotations

from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field

# Entity kinds reported by the inspector, with the property used as the
# comparison key for each of them.
ENTITY_KEYS: Dict[str, str] = {
    "lists": "title",
    "libraries": "title",
    "pages": "title",
    "files": "name",
    "users": "email",
    "content_types": "name",
    "site_fields": "name",
}


class DocumentSummary(BaseModel):
    """Normalized view of a provisioning template's contents."""

    model_config = ConfigDict(extra="forbid")

    source: str = ""
    template_ids: List[str] = Field(default_factory=list)
    lists: List[Dict[str, Any]] = Field(default_factory=list)
    libraries: List[Dict[str, Any]] = Field(default_factory=list)
    pages: List[Dict[str, Any]] = Field(default_factory=list)
    files: List[Dict[str, Any]] = Field(default_factory=list)
    users: List[Dict[str, Any]] = Field(default_factory=list)
    content_types: List[Dict[str, Any]] = Field(default_factory=list)
    site_fields: List[Dict[str, Any]] = Field(default_factory=list)

    @property
    def counts(self) -> Dict[str, int]:
        return {kind: len(getattr(self, kind)) for kind in ENTITY_KEYS}

    def keys(self, kind: str, key_property: str) -> List[str]:
        """Values of ``key_property`` for every record of ``kind``, empty values dropped."""
        return [str(r[key_property]) for r in getattr(self, kind) if r.get(key_property)]

    def to_dict(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json")
        data["counts"] = self.counts
        return data


class EntityDiff(BaseModel):
    model_config = ConfigDict(frozen=True)

    key_property: str
    only_in_a: List[str] = Field(default_factory=list)
    only_in_b: List[str] = Field(default_factory=list)
    in_both: List[str] = Field(default_factory=list)

    @property
    def is_identical(self) -> bool:
        return not self.only_in_a and not self.only_in_b


class DiffResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    source_a: str = ""
    source_b: str = ""
    kinds: Dict[str, EntityDiff] = Field(default_factory=dict)

    def __getitem__(self, kind: str) -> EntityDiff:
        return self.kinds[kind]

    @property
    def is_identical(self) -> bool:
        return all(d.is_identical for d in self.kinds.values())

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")
