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
Operator-facing reporting for a pipeline run.

Groups the batches left failing after a run by error type with remediation
hints, logs a per-stage summary, renders a rich report and writes the error
report / JSON summary files under the report directory.
"""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.theme import Theme

from batch_splitter import Batch
from log_utils import log_subsection, safe_first_line
from schema_compare import Issue
from stage_pipeline import PipelineRun
from tool_version import __version__

DEFAULT_ERROR_REPORT_LIMIT = 200
DEFAULT_REPORT_WIDTH = 160

# Rich 渲染写入文件时需要的简化字符映射，便于 vi/less 查看
BOX_ASCII_TRANS = str.maketrans({
    "┏": "+", "┓": "+", "┗": "+", "┛": "+", "┣": "+", "┫": "+", "┳": "+", "┻": "+", "╋": "+",
    "━": "-", "┃": "|", "─": "-", "│": "|",
    "┌": "+", "┐": "+", "└": "+", "┘": "+", "├": "+", "┤": "+", "┴": "+", "┬": "+", "┼": "+",
    "╭": "+", "╮": "+", "╰": "+", "╯": "+",
    "═": "-", "║": "|", "╔": "+", "╗": "+", "╚": "+", "╝": "+",
    "╡": "+", "╞": "+", "╪": "+",
})

REPORT_THEME = Theme({
    "ok": "green",
    "missing": "red",
    "mismatch": "yellow",
    "info": "cyan",
    "header": "bold magenta",
    "title": "bold white on blue",
})


class FailureType:
    """Classification of SQL Server failures for the remediation report."""
    MISSING_OBJECT = "missing_object"        # Referenced object not created yet
    PERMISSION_DENIED = "permission_denied"  # Needs grants
    SYNTAX_ERROR = "syntax_error"            # Generated DDL needs a fix
    INVALID_IDENTIFIER = "invalid_identifier"
    NAME_IN_USE = "name_in_use"              # Object already exists
    DATA_CONFLICT = "data_conflict"          # Duplicate key / FK or CHECK conflict with data
    TIMEOUT = "timeout"
    LOCK_TIMEOUT = "lock_timeout"
    DEADLOCK = "deadlock"
    AUTH_FAILED = "auth_failed"
    CONNECTION_ERROR = "connection_error"
    UNKNOWN = "unknown"


FAILURE_HINTS = {
    FailureType.MISSING_OBJECT: "依赖对象缺失：检查上游阶段是否失败，或依赖位于未选择的阶段",
    FailureType.PERMISSION_DENIED: "权限不足：为执行账号补充权限后重跑",
    FailureType.SYNTAX_ERROR: "语法错误：生成的脚本需人工修正",
    FailureType.INVALID_IDENTIFIER: "列名无效：检查表结构是否与源端一致",
    FailureType.NAME_IN_USE: "对象已存在：目标库可能不是空库，确认后可忽略",
    FailureType.DATA_CONFLICT: "数据冲突：清理目标数据或以 NOCHECK 方式创建约束",
    FailureType.TIMEOUT: "执行超时：调大 sqlcmd_timeout 后重跑",
    FailureType.LOCK_TIMEOUT: "锁等待超时：确认目标库无其他会话占用",
    FailureType.DEADLOCK: "死锁：直接重跑通常可恢复",
    FailureType.AUTH_FAILED: "登录失败：检查 [MSSQL_TARGET] 账号配置",
    FailureType.CONNECTION_ERROR: "连接异常：检查网络连通性",
    FailureType.UNKNOWN: "未识别错误：请查看错误报告原文",
}


def classify_sql_error(message: Optional[str]) -> str:
    """
    Classify a SQL Server / sqlcmd error message.

    Args:
        message: Error text returned by the executor

    Returns:
        FailureType classification string
    """
    if not message:
        return FailureType.UNKNOWN

    upper = message.upper()

    def has_msg(*codes: int) -> bool:
        return any(f"MSG {code}," in upper for code in codes)

    if "执行超时" in message or "TIMEOUT EXPIRED" in upper or "QUERY TIMEOUT" in upper:
        return FailureType.TIMEOUT

    # Missing object (retryable - object may be created by a later batch)
    if (
        has_msg(208, 1767, 4902, 3701, 15151)
        or "INVALID OBJECT NAME" in upper
        or "REFERENCES INVALID TABLE" in upper
        or "DOES NOT EXIST OR YOU DO NOT HAVE PERMISSION" in upper
    ):
        return FailureType.MISSING_OBJECT

    if has_msg(18456) or "LOGIN FAILED" in upper:
        return FailureType.AUTH_FAILED

    if has_msg(229, 262, 300, 15247) or "PERMISSION WAS DENIED" in upper or "PERMISSION DENIED" in upper:
        return FailureType.PERMISSION_DENIED

    if has_msg(1205) or "DEADLOCK" in upper:
        return FailureType.DEADLOCK

    if has_msg(1222) or "LOCK REQUEST TIME OUT" in upper:
        return FailureType.LOCK_TIMEOUT

    if (
        "SQLCMD: ERROR" in upper
        or "COMMUNICATION LINK FAILURE" in upper
        or "NETWORK-RELATED" in upper
        or has_msg(10054, 10060)
    ):
        return FailureType.CONNECTION_ERROR

    if has_msg(2627, 2601, 547) or "DUPLICATE KEY" in upper or "CONFLICTED WITH THE" in upper:
        return FailureType.DATA_CONFLICT

    if has_msg(2714, 1913, 2705, 1801, 15023) or "ALREADY AN OBJECT NAMED" in upper or "ALREADY EXISTS" in upper:
        return FailureType.NAME_IN_USE

    if has_msg(207, 1911) or "INVALID COLUMN NAME" in upper:
        return FailureType.INVALID_IDENTIFIER

    if has_msg(102, 156, 170, 111) or "INCORRECT SYNTAX" in upper:
        return FailureType.SYNTAX_ERROR

    return FailureType.UNKNOWN


def collect_failed_batches(run: PipelineRun) -> List[Tuple[str, Batch]]:
    failed: List[Tuple[str, Batch]] = []
    for item in run.stages:
        for batch in item.outcome.failed_batches:
            failed.append((item.stage.name, batch))
    return failed


def analyze_failure_patterns(run: PipelineRun) -> Dict[str, List[Tuple[str, Batch]]]:
    failures_by_type: Dict[str, List[Tuple[str, Batch]]] = defaultdict(list)
    for stage_name, batch in collect_failed_batches(run):
        failures_by_type[classify_sql_error(batch.last_error)].append((stage_name, batch))
    return dict(failures_by_type)


def log_failure_analysis(
    failures_by_type: Dict[str, List[Tuple[str, Batch]]],
    logger: logging.Logger,
    sample_limit: int = 3,
) -> None:
    if not failures_by_type:
        return

    log_subsection(logger, "失败原因分析")
    total = sum(len(items) for items in failures_by_type.values())
    logger.info("总失败数: %d", total)
    for failure_type, items in sorted(failures_by_type.items(), key=lambda kv: (-len(kv[1]), kv[0])):
        logger.info("%s: %d -> %s", failure_type, len(items), FAILURE_HINTS.get(failure_type, ""))
        for stage_name, batch in items[:sample_limit]:
            logger.info(
                "  [%s #%d] %s",
                stage_name,
                batch.index,
                safe_first_line(batch.last_error, 160, "执行失败"),
            )
        if len(items) > sample_limit:
            logger.info("  ... 另有 %d 个", len(items) - sample_limit)


def format_duration(seconds: float) -> str:
    seconds = max(0.0, seconds)
    minutes, secs = divmod(int(round(seconds)), 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h{minutes:02d}m{secs:02d}s"
    if minutes:
        return f"{minutes}m{secs:02d}s"
    return f"{seconds:.1f}s"


def stage_status_label(item) -> str:
    if item.error:
        return "ERROR"
    if item.outcome.cancelled:
        return "CANCELLED"
    return "SUCCESS" if item.outcome.success else "FAILED"


def log_pipeline_summary(run: PipelineRun, logger: logging.Logger) -> None:
    log_subsection(logger, "阶段执行汇总")
    for item in run.stages:
        outcome = item.outcome
        logger.info(
            "%-14s %-9s 批次 %d, 失败 %d, 轮次 %d/%d",
            item.stage.name,
            stage_status_label(item),
            outcome.total_batches,
            len(outcome.failed_batches),
            outcome.passes_used,
            item.stage.max_passes,
        )
    logger.info("总耗时: %s", format_duration(run.duration_seconds))
    if run.aborted:
        logger.error("运行中止: %s", run.aborted)
    if run.cancelled:
        logger.warning("运行被取消")


def render_pipeline_report(
    run: PipelineRun,
    width: int = DEFAULT_REPORT_WIDTH,
    issues: Optional[Sequence[Issue]] = None,
    console: Optional[Console] = None,
) -> str:
    """Print the run report through rich and return it as plain text."""
    if console is None:
        console = Console(theme=REPORT_THEME, record=True, width=width)

    status = "[ok]成功[/ok]" if run.success else "[missing]存在失败[/missing]"
    console.print(Panel.fit(
        "\n".join([
            f"[bold]SQL Server 克隆部署报告 (V{__version__})[/bold]",
            f"源: {run.source}",
            f"目标: {run.destination}",
            f"开始: {run.started_at.strftime('%Y-%m-%d %H:%M:%S')}",
            f"耗时: {format_duration(run.duration_seconds)}",
            f"结果: {status}",
        ]),
        title="[info]运行总结",
        border_style="info",
    ))

    stage_table = Table(title="[header]阶段结果")
    stage_table.add_column("#", justify="right")
    stage_table.add_column("阶段")
    stage_table.add_column("状态")
    stage_table.add_column("批次", justify="right")
    stage_table.add_column("失败", justify="right")
    stage_table.add_column("轮次", justify="right")
    stage_table.add_column("说明")
    for item in run.stages:
        label = stage_status_label(item)
        style = "ok" if label == "SUCCESS" else "missing"
        stage_table.add_row(
            str(item.stage.order),
            item.stage.name,
            f"[{style}]{label}[/{style}]",
            str(item.outcome.total_batches),
            str(len(item.outcome.failed_batches)),
            f"{item.outcome.passes_used}/{item.stage.max_passes}",
            safe_first_line(item.error, 60),
        )
    console.print(stage_table)

    failed = collect_failed_batches(run)
    if failed:
        batch_table = Table(title="[header]需人工处理的批次")
        batch_table.add_column("阶段")
        batch_table.add_column("批次", justify="right")
        batch_table.add_column("行号", justify="right")
        batch_table.add_column("类型")
        batch_table.add_column("语句")
        batch_table.add_column("最后错误")
        for stage_name, batch in failed:
            batch_table.add_row(
                stage_name,
                str(batch.index),
                str(batch.start_line),
                classify_sql_error(batch.last_error),
                safe_first_line(batch.first_line, 50),
                safe_first_line(batch.last_error, 80, "-"),
            )
        console.print(batch_table)

    if run.aborted:
        console.print(f"[missing]运行中止: {run.aborted}[/missing]")

    if issues is not None:
        if not issues:
            console.print("[ok]校验通过: 未发现差异[/ok]")
        else:
            issue_table = Table(title="[header]校验差异")
            issue_table.add_column("类型")
            issue_table.add_column("对象")
            issue_table.add_column("问题")
            issue_table.add_column("详情")
            for issue in issues:
                issue_table.add_row(
                    issue.object_type,
                    issue.name,
                    f"[mismatch]{issue.kind}[/mismatch]",
                    issue.detail,
                )
            console.print(issue_table)

    return console.export_text(clear=False)


def _timestamp() -> str:
    return datetime.now().strftime("%Y%m%d_%H%M%S")


def write_text_report(report_text: str, report_dir: Path) -> Path:
    report_dir.mkdir(parents=True, exist_ok=True)
    report_path = report_dir / f"clone_report_{_timestamp()}.txt"
    report_path.write_text(report_text.translate(BOX_ASCII_TRANS), encoding="utf-8")
    return report_path


def write_error_report(
    run: PipelineRun,
    report_dir: Path,
    limit: int = DEFAULT_ERROR_REPORT_LIMIT,
) -> Optional[Path]:
    failed = collect_failed_batches(run)
    stage_errors = [item for item in run.stages if item.error]
    if not failed and not stage_errors:
        return None
    report_dir.mkdir(parents=True, exist_ok=True)
    report_path = report_dir / f"clone_errors_{_timestamp()}.txt"
    truncated = len(failed) > limit
    lines = [
        "# clone error report",
        f"# count={len(failed)} limit={limit} truncated={'true' if truncated else 'false'}",
        "STAGE | BATCH | LINE | ERROR_TYPE | FIRST_LINE | MESSAGE",
    ]
    for item in stage_errors:
        lines.append(f"{item.stage.name} | - | - | stage_error | - | {item.error}")
    for stage_name, batch in failed[:limit]:
        message = " ".join((batch.last_error or "").split())
        if len(message) > 200:
            message = message[:200] + "..."
        lines.append(
            f"{stage_name} | {batch.index} | {batch.start_line} | "
            f"{classify_sql_error(batch.last_error)} | {safe_first_line(batch.first_line, 80, '-')} | {message or '-'}"
        )
    report_path.write_text("\n".join(lines).rstrip() + "\n", encoding="utf-8")
    return report_path


def build_run_payload(run: PipelineRun) -> dict:
    return {
        "version": __version__,
        "source": run.source,
        "destination": run.destination,
        "started_at": run.started_at.isoformat(timespec="seconds"),
        "finished_at": run.finished_at.isoformat(timespec="seconds") if run.finished_at else None,
        "success": run.success,
        "cancelled": run.cancelled,
        "aborted": run.aborted,
        "stages": [
            {
                "name": item.stage.name,
                "order": item.stage.order,
                "script": str(item.script_path or item.stage.script_path),
                "max_passes": item.stage.max_passes,
                "status": stage_status_label(item),
                "passes_used": item.outcome.passes_used,
                "total_batches": item.outcome.total_batches,
                "error": item.error,
                "failed_batches": [
                    {
                        "index": batch.index,
                        "line": batch.start_line,
                        "error_type": classify_sql_error(batch.last_error),
                        "last_error": batch.last_error,
                    }
                    for batch in item.outcome.failed_batches
                ],
            }
            for item in run.stages
        ],
    }


def write_run_json(run: PipelineRun, report_dir: Path) -> Path:
    report_dir.mkdir(parents=True, exist_ok=True)
    report_path = report_dir / f"clone_run_{_timestamp()}.json"
    report_path.write_text(
        json.dumps(build_run_payload(run), ensure_ascii=False, indent=2),
        encoding="utf-8",
    )
    return report_path
