from __future__ import annotations

from pydantic import BaseModel


class DuplicateGroupResponse(BaseModel):
    group_id: str
    member_file_ids: list[str]
    match_basis: str
    similarity_score: float
    space_wasted: int
    size: int


class VersionMemberResponse(BaseModel):
    file_id: str
    name: str
    size: int
    version_number: int
    is_versioned: bool
    confidence: float
    modified_time: str
    is_latest: bool


class VersionChainResponse(BaseModel):
    chain_id: str
    base_key: str
    base_name: str
    mime_type: str
    members: list[VersionMemberResponse]
    winner: VersionMemberResponse
    confidence: float
    total_size: int
    potential_savings: int


class DuplicateReportResponse(BaseModel):
    owner_id: str
    duplicates_found: int
    space_wasted: int
    potential_savings: int
    exact_group_count: int
    fuzzy_group_count: int
    version_chain_count: int
    exact_groups: list[DuplicateGroupResponse]
    fuzzy_groups: list[DuplicateGroupResponse]
    version_chains: list[VersionChainResponse]


class DeltaEventResponse(BaseModel):
    delta_type: str
    file_id: str
    file_name: str
    size_change: int | None


class DeltaListResponse(BaseModel):
    owner_id: str
    scan_id: str | None
    items: list[DeltaEventResponse]
