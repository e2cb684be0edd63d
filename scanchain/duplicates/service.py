from __future__ import annotations

import hashlib
import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from scanchain.core.config import Settings
from scanchain.db.models import FileIndexEntry
from scanchain.duplicates.types import (
    DuplicateGroup,
    DuplicateReport,
    IndexedFile,
    MatchBasis,
    VersionChain,
    VersionMember,
)
from scanchain.sources.types import FOLDER_MIME_TYPE

logger = logging.getLogger(__name__)

_VERSION_PATTERNS = (
    re.compile(r"^(?P<base>.+?)\s*\((?P<version>\d+)\)(?P<ext>\.[^.]*)?$"),
    re.compile(r"^(?P<base>.+?)[-_ ](?:copy|v|version)[-_ ]?(?P<version>\d+)(?P<ext>\.[^.]*)?$", re.IGNORECASE),
    re.compile(r"^(?P<base>.+?)[-_ ]copy(?P<ext>\.[^.]*)?$", re.IGNORECASE),
)
_EXTENSION = re.compile(r"(\.[^.]*)$")

_VERSIONED_MEMBER_CONFIDENCE = 0.8
_ORIGINAL_MEMBER_CONFIDENCE = 0.9


@dataclass(frozen=True, slots=True)
class _VersionInfo:
    base_name: str
    extension: str
    version: int
    is_versioned: bool

    @property
    def stripped_name(self) -> str:
        return f"{self.base_name}{self.extension}"


def levenshtein_distance(left: str, right: str) -> int:
    if left == right:
        return 0
    if len(left) < len(right):
        left, right = right, left
    previous = list(range(len(right) + 1))
    for i, left_char in enumerate(left, start=1):
        current = [i]
        for j, right_char in enumerate(right, start=1):
            cost = 0 if left_char == right_char else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def name_similarity(left: str, right: str) -> float:
    """1 - normalized edit distance of the lowercased names."""
    a = left.lower()
    b = right.lower()
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return 1.0 - levenshtein_distance(a, b) / longest


def extract_version_info(file_name: str) -> _VersionInfo:
    for pattern in _VERSION_PATTERNS:
        match = pattern.match(file_name)
        if match is None:
            continue
        raw_version = match.groupdict().get("version")
        return _VersionInfo(
            base_name=match.group("base").strip(),
            extension=match.group("ext") or "",
            version=int(raw_version) if raw_version else 1,
            is_versioned=True,
        )
    ext_match = _EXTENSION.search(file_name)
    extension = ext_match.group(1) if ext_match and ext_match.start() > 0 else ""
    base = file_name[: len(file_name) - len(extension)] if extension else file_name
    return _VersionInfo(base_name=base.strip(), extension=extension, version=0, is_versioned=False)


def _parse_modified(value: str) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _normalized_std(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    mean = sum(values) / len(values)
    if mean == 0:
        return 0.0
    variance = sum((value - mean) ** 2 for value in values) / len(values)
    return math.sqrt(variance) / mean


def _time_spread_seconds(values: Sequence[str]) -> float:
    stamps = [parsed.timestamp() for parsed in (_parse_modified(value) for value in values) if parsed is not None]
    if len(stamps) < 2:
        return 0.0
    mean = sum(stamps) / len(stamps)
    return math.sqrt(sum((stamp - mean) ** 2 for stamp in stamps) / len(stamps))


def _digest(*parts: str) -> str:
    return hashlib.md5(":".join(parts).encode("utf-8")).hexdigest()[:16]


class DuplicateDetector:
    """Clusters indexed files into exact groups, fuzzy-name groups and version chains."""

    def __init__(self, settings: Settings, session_factory: sessionmaker[Session] | None = None):
        self._settings = settings
        self._session_factory = session_factory

    def _cluster(self, items: list[Any], key: Any) -> list[list[Any]]:
        threshold = self._settings.name_similarity_threshold
        clusters: list[list[Any]] = []
        for item in items:
            name = key(item)
            for cluster in clusters:
                if any(name_similarity(name, key(member)) >= threshold for member in cluster):
                    cluster.append(item)
                    break
            else:
                clusters.append([item])
        return clusters

    def detect(self, entries: Iterable[IndexedFile]) -> DuplicateReport:
        candidates = sorted(
            (entry for entry in entries if entry.size > 0 and entry.mime_type != FOLDER_MIME_TYPE),
            key=lambda entry: entry.file_id,
        )
        report = DuplicateReport()

        by_size: dict[int, list[IndexedFile]] = {}
        for entry in candidates:
            by_size.setdefault(entry.size, []).append(entry)

        for size, group in by_size.items():
            if len(group) < 2:
                continue
            report.exact_groups.extend(self._exact_groups(size, group))
            report.fuzzy_groups.extend(self._fuzzy_groups(size, [entry for entry in group if not entry.content_hash]))

        report.version_chains.extend(self._version_chains(candidates))

        report.exact_groups.sort(key=lambda group: (-group.space_wasted, group.group_id))
        report.fuzzy_groups.sort(key=lambda group: (-group.space_wasted, group.group_id))
        report.version_chains.sort(key=lambda chain: (-chain.potential_savings, chain.chain_id))
        return report

    def _exact_groups(self, size: int, group: list[IndexedFile]) -> list[DuplicateGroup]:
        by_hash: dict[str, list[IndexedFile]] = {}
        for entry in group:
            if entry.content_hash:
                by_hash.setdefault(entry.content_hash, []).append(entry)
        groups = []
        for content_hash, members in by_hash.items():
            if len(members) < 2:
                continue
            groups.append(
                DuplicateGroup(
                    group_id=_digest("exact", str(size), content_hash),
                    member_file_ids=[member.file_id for member in members],
                    match_basis=MatchBasis.CONTENT_HASH,
                    similarity_score=1.0,
                    space_wasted=size * (len(members) - 1),
                    size=size,
                )
            )
        return groups

    def _fuzzy_groups(self, size: int, hashless: list[IndexedFile]) -> list[DuplicateGroup]:
        if len(hashless) < 2:
            return []
        groups = []
        for cluster in self._cluster(hashless, lambda entry: entry.name):
            if len(cluster) < 2:
                continue
            ids = [member.file_id for member in cluster]
            score = min(
                name_similarity(left.name, right.name)
                for index, left in enumerate(cluster)
                for right in cluster[index + 1 :]
            )
            groups.append(
                DuplicateGroup(
                    group_id=_digest("fuzzy", str(size), *sorted(ids)),
                    member_file_ids=ids,
                    match_basis=MatchBasis.FUZZY_NAME,
                    similarity_score=round(score, 4),
                    space_wasted=size * (len(cluster) - 1),
                    size=size,
                )
            )
        return groups

    def _version_chains(self, candidates: list[IndexedFile]) -> list[VersionChain]:
        by_base: dict[tuple[str, str], list[tuple[IndexedFile, _VersionInfo]]] = {}
        for entry in candidates:
            info = extract_version_info(entry.name)
            by_base.setdefault((info.base_name.lower(), entry.mime_type), []).append((entry, info))

        chains = []
        for (base_key, mime_type), group in by_base.items():
            if len(group) < 2:
                continue
            for cluster in self._cluster(group, lambda pair: pair[1].stripped_name):
                if len(cluster) < 2:
                    continue
                chain = self._build_chain(base_key, mime_type, cluster)
                if chain is not None:
                    chains.append(chain)
        return chains

    def _build_chain(
        self,
        base_key: str,
        mime_type: str,
        cluster: list[tuple[IndexedFile, _VersionInfo]],
    ) -> VersionChain | None:
        settings = self._settings
        members = [
            VersionMember(
                file_id=entry.file_id,
                name=entry.name,
                size=entry.size,
                version_number=info.version,
                is_versioned=info.is_versioned,
                confidence=_VERSIONED_MEMBER_CONFIDENCE if info.is_versioned else _ORIGINAL_MEMBER_CONFIDENCE,
                modified_time=entry.modified_time,
            )
            for entry, info in cluster
        ]
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        members.sort(
            key=lambda member: (member.version_number, _parse_modified(member.modified_time) or epoch),
            reverse=True,
        )
        winner = members[0]
        winner.is_latest = True

        avg_member_confidence = sum(member.confidence for member in members) / len(members)
        pattern_recognized = any(member.is_versioned for member in members)
        size_consistent = _normalized_std([float(member.size) for member in members]) < settings.version_max_size_variance
        time_spread = _time_spread_seconds([member.modified_time for member in members]) > 0

        confidence = min(
            1.0,
            settings.version_weight_member_confidence * avg_member_confidence
            + (settings.version_weight_pattern if pattern_recognized else 0.0)
            + (settings.version_weight_size_consistency if size_consistent else 0.0)
            + (settings.version_weight_time_spread if time_spread else 0.0),
        )
        if confidence < settings.version_min_confidence:
            return None

        total_size = sum(member.size for member in members)
        ids = sorted(member.file_id for member in members)
        return VersionChain(
            chain_id=_digest("version", base_key, mime_type, *ids),
            base_key=base_key,
            base_name=cluster[0][1].base_name,
            mime_type=mime_type,
            members=members,
            winner=winner,
            confidence=round(confidence, 4),
            total_size=total_size,
            potential_savings=max(0, total_size - winner.size),
        )

    def detect_for_owner(self, owner_id: str) -> DuplicateReport:
        if self._session_factory is None:
            raise RuntimeError("DuplicateDetector was created without a session factory")
        with self._session_factory() as session:
            entries = [
                IndexedFile(
                    file_id=row.file_id,
                    name=row.name,
                    size=row.size,
                    content_hash=row.content_hash,
                    mime_type=row.mime_type,
                    modified_time=row.modified_time,
                )
                for row in session.scalars(
                    select(FileIndexEntry).where(
                        FileIndexEntry.owner_id == owner_id,
                        FileIndexEntry.is_deleted.is_(False),
                        FileIndexEntry.size > 0,
                    )
                ).all()
            ]
        report = self.detect(entries)
        logger.info(
            "Duplicate detection for owner %s: entries=%d exact=%d fuzzy=%d chains=%d",
            owner_id,
            len(entries),
            len(report.exact_groups),
            len(report.fuzzy_groups),
            len(report.version_chains),
        )
        return report


def duplicate_group_to_dict(group: DuplicateGroup) -> dict[str, Any]:
    return {
        "group_id": group.group_id,
        "member_file_ids": list(group.member_file_ids),
        "match_basis": group.match_basis.value,
        "similarity_score": group.similarity_score,
        "space_wasted": group.space_wasted,
        "size": group.size,
    }


def version_member_to_dict(member: VersionMember) -> dict[str, Any]:
    return {
        "file_id": member.file_id,
        "name": member.name,
        "size": member.size,
        "version_number": member.version_number,
        "is_versioned": member.is_versioned,
        "confidence": member.confidence,
        "modified_time": member.modified_time,
        "is_latest": member.is_latest,
    }


def version_chain_to_dict(chain: VersionChain) -> dict[str, Any]:
    return {
        "chain_id": chain.chain_id,
        "base_key": chain.base_key,
        "base_name": chain.base_name,
        "mime_type": chain.mime_type,
        "members": [version_member_to_dict(member) for member in chain.members],
        "winner": version_member_to_dict(chain.winner),
        "confidence": chain.confidence,
        "total_size": chain.total_size,
        "potential_savings": chain.potential_savings,
    }


def duplicate_report_to_dict(report: DuplicateReport, *, max_groups: int | None = None) -> dict[str, Any]:
    exact = report.exact_groups[:max_groups] if max_groups else report.exact_groups
    fuzzy = report.fuzzy_groups[:max_groups] if max_groups else report.fuzzy_groups
    chains = report.version_chains[:max_groups] if max_groups else report.version_chains
    return {
        "duplicates_found": report.duplicates_found,
        "space_wasted": report.space_wasted,
        "potential_savings": report.potential_savings,
        "exact_group_count": len(report.exact_groups),
        "fuzzy_group_count": len(report.fuzzy_groups),
        "version_chain_count": len(report.version_chains),
        "exact_groups": [duplicate_group_to_dict(group) for group in exact],
        "fuzzy_groups": [duplicate_group_to_dict(group) for group in fuzzy],
        "version_chains": [version_chain_to_dict(chain) for chain in chains],
    }
