from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class MatchBasis(str, Enum):
    CONTENT_HASH = "content_hash"
    FUZZY_NAME = "fuzzy_name"


@dataclass(frozen=True, slots=True)
class IndexedFile:
    file_id: str
    name: str
    size: int
    content_hash: str | None = None
    mime_type: str = "application/octet-stream"
    modified_time: str = ""


@dataclass(slots=True)
class DuplicateGroup:
    group_id: str
    member_file_ids: list[str]
    match_basis: MatchBasis
    similarity_score: float
    space_wasted: int
    size: int


@dataclass(slots=True)
class VersionMember:
    file_id: str
    name: str
    size: int
    version_number: int
    is_versioned: bool
    confidence: float
    modified_time: str
    is_latest: bool = False


@dataclass(slots=True)
class VersionChain:
    chain_id: str
    base_key: str
    base_name: str
    mime_type: str
    members: list[VersionMember]
    winner: VersionMember
    confidence: float
    total_size: int
    potential_savings: int


@dataclass(slots=True)
class DuplicateReport:
    exact_groups: list[DuplicateGroup] = field(default_factory=list)
    fuzzy_groups: list[DuplicateGroup] = field(default_factory=list)
    version_chains: list[VersionChain] = field(default_factory=list)

    @property
    def duplicates_found(self) -> int:
        return sum(len(group.member_file_ids) - 1 for group in [*self.exact_groups, *self.fuzzy_groups])

    @property
    def space_wasted(self) -> int:
        return sum(group.space_wasted for group in [*self.exact_groups, *self.fuzzy_groups])

    @property
    def potential_savings(self) -> int:
        return sum(chain.potential_savings for chain in self.version_chains)
