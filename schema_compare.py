#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# Copyright 2025 Minorli
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""
Post-clone verification over catalog snapshots.

Catalog snapshots are JSON files written by the external catalog extractor
(one object per entry). Objects are matched on a canonical key: schema,
object name and the ordered column list, each with bracket/quote quoting
removed and case-folded, joined with ``KEY_SEPARATOR``. Two objects are equal
when their keys and their whitespace/case-normalised definitions match.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from clone_errors import ConfigError

KEY_SEPARATOR = "|"
COLUMN_SEPARATOR = ","


class IssueKind:
    MISSING = "Missing"
    ROW_COUNT_MISMATCH = "RowCountMismatch"
    MISSING_OR_DIFFERENT = "MissingOrDifferent"

    ALL = (MISSING, ROW_COUNT_MISMATCH, MISSING_OR_DIFFERENT)


@dataclass(frozen=True)
class Issue:
    object_type: str
    name: str
    kind: str
    detail: str = ""


@dataclass
class CatalogObject:
    object_type: str
    schema: str
    name: str
    columns: Tuple[str, ...] = field(default_factory=tuple)
    definition: str = ""
    row_count: Optional[int] = None

    @property
    def key(self) -> str:
        return build_canonical_key(self.schema, self.name, self.columns)

    @property
    def display_name(self) -> str:
        return f"{self.schema}.{self.name}" if self.schema else self.name


def normalize_name_part(part: Optional[str]) -> str:
    text = (part or "").strip()
    if len(text) >= 2 and (
        (text[0] == "[" and text[-1] == "]") or (text[0] == '"' and text[-1] == '"')
    ):
        text = text[1:-1].strip()
    return text.casefold()


def build_canonical_key(schema: Optional[str], name: Optional[str], columns: Optional[Sequence[str]] = None) -> str:
    parts = [normalize_name_part(schema), normalize_name_part(name)]
    if columns:
        parts.append(COLUMN_SEPARATOR.join(normalize_name_part(col) for col in columns))
    return KEY_SEPARATOR.join(parts)


def normalize_definition(text: Optional[str]) -> str:
    if not text:
        return ""
    return re.sub(r"\s+", " ", str(text)).strip().casefold()


def objects_equal(left: CatalogObject, right: CatalogObject) -> bool:
    return (
        left.key == right.key
        and normalize_definition(left.definition) == normalize_definition(right.definition)
    )


def _index_objects(objects: Iterable[CatalogObject]) -> Dict[Tuple[str, str], CatalogObject]:
    return {(obj.object_type.strip().upper(), obj.key): obj for obj in objects}


def compare_catalogs(
    source_objects: Iterable[CatalogObject],
    target_objects: Iterable[CatalogObject],
    check_row_counts: bool = True,
) -> List[Issue]:
    source_index = _index_objects(source_objects)
    target_index = _index_objects(target_objects)
    issues: List[Issue] = []

    for obj_key in sorted(source_index):
        obj_type, _key = obj_key
        src = source_index[obj_key]
        tgt = target_index.get(obj_key)
        if tgt is None:
            issues.append(Issue(obj_type, src.display_name, IssueKind.MISSING, "目标端缺失"))
            continue
        if not objects_equal(src, tgt):
            issues.append(Issue(obj_type, src.display_name, IssueKind.MISSING_OR_DIFFERENT, "定义不一致"))
            continue
        if (
            check_row_counts
            and src.row_count is not None
            and tgt.row_count is not None
            and src.row_count != tgt.row_count
        ):
            issues.append(
                Issue(
                    obj_type,
                    src.display_name,
                    IssueKind.ROW_COUNT_MISMATCH,
                    f"源 {src.row_count} 行, 目标 {tgt.row_count} 行",
                )
            )
    return issues


def _read_json_list(path: Path) -> list:
    try:
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise ConfigError(f"读取 JSON 失败: {path}: {exc}") from exc
    if not isinstance(payload, list):
        raise ConfigError(f"JSON 顶层必须是数组: {path}")
    return payload


def load_catalog_snapshot(path: Path) -> List[CatalogObject]:
    objects: List[CatalogObject] = []
    for pos, item in enumerate(_read_json_list(path)):
        if not isinstance(item, dict) or not item.get("name"):
            raise ConfigError(f"目录快照第 {pos} 项缺少 name: {path}")
        row_count = item.get("row_count")
        objects.append(
            CatalogObject(
                object_type=str(item.get("object_type") or item.get("type") or "TABLE"),
                schema=str(item.get("schema") or ""),
                name=str(item["name"]),
                columns=tuple(item.get("columns") or ()),
                definition=str(item.get("definition") or ""),
                row_count=int(row_count) if row_count is not None else None,
            )
        )
    return objects


def parse_issue_kind(raw: Optional[str]) -> str:
    token = re.sub(r"[\s_\-]", "", raw or "").casefold()
    for kind in IssueKind.ALL:
        if kind.casefold() == token:
            return kind
    raise ConfigError(f"未知问题类型: {raw}")


def load_issues(path: Path) -> List[Issue]:
    """Load an issue list written by an external comparator."""
    issues: List[Issue] = []
    for item in _read_json_list(path):
        if not isinstance(item, dict):
            raise ConfigError(f"问题列表格式错误: {path}")
        issues.append(
            Issue(
                object_type=str(item.get("objectType") or item.get("object_type") or ""),
                name=str(item.get("name") or ""),
                kind=parse_issue_kind(item.get("kind")),
                detail=str(item.get("detail") or ""),
            )
        )
    return issues
