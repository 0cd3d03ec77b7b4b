from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class UserReference(BaseModel):
    """A user identity as found in a template or a directory listing.

    ``identity`` is the lowercased form; two references are equal when their
    identities are equal, whatever their raw casing or display name.
    """

    model_config = ConfigDict(frozen=True)

    identity: str = Field(..., min_length=1)
    raw: str
    display_name: str = ""

    @field_validator("identity", mode="before")
    @classmethod
    def _normalize(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().lower()
        return v

    def __eq__(self, other: object) -> bool:
        if isinstance(other, UserReference):
            return self.identity == other.identity
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self.identity)


class ProvenanceKind(str, Enum):
    ADMINISTRATOR = "administrator"
    OWNER = "owner"
    MEMBER = "member"
    VISITOR = "visitor"
    GROUP_OWNER = "group_owner"
    GROUP_MEMBER = "group_member"
    ROLE_ASSIGNMENT = "role_assignment"
    FIELD_VALUE = "field_value"
    FILE_PROPERTY = "file_property"
    FILE_METADATA = "file_metadata"
    SITE_USER = "site_user"


class Provenance(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: ProvenanceKind
    location: str

    def __str__(self) -> str:
        return self.location


class ExtractedIdentity(BaseModel):
    model_config = ConfigDict(frozen=True)

    reference: UserReference
    provenance: Provenance

    @property
    def identity(self) -> str:
        return self.reference.identity


class MappingEntry(BaseModel):
    """One row of the mapping file.

    An entry without ``target_identity`` is a *skip* entry: it is kept in the
    table (so lookups report it) but is never substituted.
    """

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    source_identity: str = Field(..., min_length=1)
    target_identity: Optional[str] = None
    source_display_name: str = ""
    target_display_name: str = ""
    notes: str = ""

    @field_validator("target_identity", mode="before")
    @classmethod
    def _blank_target_is_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @property
    def key(self) -> str:
        return self.source_identity.lower()

    @property
    def is_skip(self) -> bool:
        return not self.target_identity


class ValidationStatus(str, Enum):
    VALID = "Valid"
    INVALID = "Invalid"


class ValidationOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    entry: MappingEntry
    status: ValidationStatus
    reason: str = ""

    @property
    def is_valid(self) -> bool:
        return self.status is ValidationStatus.VALID


class ValidationReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    outcomes: List[ValidationOutcome] = Field(default_factory=list)

    @property
    def valid_count(self) -> int:
        return sum(1 for o in self.outcomes if o.is_valid)

    @property
    def invalid_count(self) -> int:
        return len(self.outcomes) - self.valid_count

    @property
    def invalid_outcomes(self) -> List[ValidationOutcome]:
        return [o for o in self.outcomes if not o.is_valid]

    @property
    def is_valid(self) -> bool:
        return self.invalid_count == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "valid": self.valid_count,
            "invalid": self.invalid_count,
            "outcomes": [o.model_dump(mode="json") for o in self.outcomes],
        }


class DirectoryUser(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    login_name: str = Field("", alias="LoginName")
    email: str = Field("", alias="Email")
    title: str = Field("", alias="Title")
    id: Optional[int] = Field(None, alias="Id")


@dataclass(frozen=True)
class Found:
    user: DirectoryUser


@dataclass(frozen=True)
class NotFound:
    identity: str
    reason: str = field(default="not found")


LookupResult = Union[Found, NotFound]
