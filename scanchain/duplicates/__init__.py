from scanchain.duplicates.service import (
    DuplicateDetector,
    duplicate_group_to_dict,
    duplicate_report_to_dict,
    extract_version_info,
    name_similarity,
    version_chain_to_dict,
)
from scanchain.duplicates.types import (
    DuplicateGroup,
    DuplicateReport,
    IndexedFile,
    MatchBasis,
    VersionChain,
    VersionMember,
)

__all__ = [
    "DuplicateDetector",
    "DuplicateGroup",
    "DuplicateReport",
    "IndexedFile",
    "MatchBasis",
    "VersionChain",
    "VersionMember",
    "duplicate_group_to_dict",
    "duplicate_report_to_dict",
    "extract_version_info",
    "name_similarity",
    "version_chain_to_dict",
]
