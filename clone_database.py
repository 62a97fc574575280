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
Staged SQL Server schema clone runner.

Features:
  - Fixed stage order: base_schema, constraints, indexes, keys, programmables, users
  - Per-stage script generation through an external toolkit command (optional)
  - GO batch splitting with multi-pass retry of failing batches
  - Convergence detection (stop when a pass makes no progress)
  - Rich run report, error report and JSON summary

Usage:
    python3 clone_database.py [config.ini] [options]

    --stages          : Only run these stages (comma-separated)
    --max-passes N    : Override the per-stage pass budget
    --dry-run         : Split scripts and report batch counts, execute nothing
    --no-generate     : Skip generator_command, use scripts already in script_dir
    --verify SRC TGT  : Compare catalog snapshots after deployment
    --issues FILE     : Render an external comparator's issue list
"""

from __future__ import annotations

import argparse
import configparser
import logging
import shlex
import signal
import subprocess
import sys
import textwrap
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from batch_splitter import split_batches
from clone_errors import ConfigError, SetupError, SplitError
from deploy_report import (
    DEFAULT_REPORT_WIDTH,
    analyze_failure_patterns,
    log_failure_analysis,
    log_pipeline_summary,
    render_pipeline_report,
    write_error_report,
    write_run_json,
    write_text_report,
)
from log_utils import (
    attach_file_handler,
    init_console_logging,
    log_section,
    resolve_console_log_level,
    set_console_log_level,
)
from retry_scheduler import DEFAULT_MAX_PASSES
from schema_compare import compare_catalogs, load_catalog_snapshot, load_issues
from sql_executor import (
    DEFAULT_ODBC_DRIVER,
    DEFAULT_SQLCMD_TIMEOUT,
    PyodbcExecutor,
    SqlcmdExecutor,
    build_odbc_connection_string,
    build_sqlcmd_command,
    check_connectivity,
    ensure_database,
)
from stage_pipeline import (
    DEFAULT_STAGE_NAMES,
    PipelineRun,
    Stage,
    StagePipeline,
    build_default_stages,
    read_stage_script,
)
from tool_version import __version__

CONFIG_DEFAULT_PATH = "config.ini"
DEFAULT_SCRIPT_DIR = "clone_scripts"
DEFAULT_REPORT_DIR = "clone_reports"
DEFAULT_MAX_SCRIPT_FILE_MB = 50
DEFAULT_GENERATOR_TIMEOUT = 3600
EXECUTOR_KINDS = {"sqlcmd", "pyodbc"}

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 130

log = logging.getLogger("clone_database")


@dataclass
class CloneSettings:
    source_cfg: Dict[str, str]
    target_cfg: Dict[str, str]
    script_dir: Path
    report_dir: Path
    stage_names: List[str] = field(default_factory=lambda: list(DEFAULT_STAGE_NAMES))
    max_passes: int = DEFAULT_MAX_PASSES
    stage_max_passes: Dict[str, int] = field(default_factory=dict)
    executor: str = "sqlcmd"
    odbc_driver: str = DEFAULT_ODBC_DRIVER
    timeout: Optional[int] = DEFAULT_SQLCMD_TIMEOUT
    generator_command: str = ""
    create_database: bool = False
    max_script_bytes: Optional[int] = DEFAULT_MAX_SCRIPT_FILE_MB * 1024 * 1024
    log_level: str = "AUTO"
    log_file: Optional[Path] = None
    report_width: int = DEFAULT_REPORT_WIDTH

    @property
    def source_label(self) -> str:
        return f"{self.source_cfg['server']}/{self.source_cfg['database']}"

    @property
    def destination_label(self) -> str:
        return f"{self.target_cfg['server']}/{self.target_cfg['database']}"


def parse_bool_flag(value: Optional[str], default: bool = True) -> bool:
    if value is None:
        return default
    val = value.strip().lower()
    if not val:
        return default
    return val in ("1", "true", "yes", "on")


def parse_csv_args(arg_list: List[str]) -> List[str]:
    values: List[str] = []
    for item in arg_list:
        if not item:
            continue
        values.extend([p.strip() for p in item.split(",") if p.strip()])
    return values


def _read_db_section(parser: configparser.ConfigParser, section: str) -> Dict[str, str]:
    if section not in parser:
        raise ConfigError(f"配置文件缺少 [{section}] 配置段。")
    values = {key: value.strip() for key, value in parser[section].items()}
    missing = [key for key in ("server", "database") if not values.get(key)]
    if missing:
        raise ConfigError(f"[{section}] 缺少必填项: {', '.join(missing)}")
    return values


def _get_int(parser: configparser.ConfigParser, key: str, fallback: int, minimum: int = 0) -> int:
    raw = parser.get("SETTINGS", key, fallback="").strip()
    if not raw:
        return fallback
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError(f"[SETTINGS] {key} 不是整数: {raw}") from exc
    if value < minimum:
        raise ConfigError(f"[SETTINGS] {key} 不能小于 {minimum}: {value}")
    return value


def load_clone_config(config_path: Path) -> CloneSettings:
    """Load source/target connection info and run settings from config.ini."""
    parser = configparser.ConfigParser(interpolation=None)
    if not config_path.exists():
        raise ConfigError(f"配置文件不存在: {config_path}")
    parser.read(config_path, encoding="utf-8")

    source_cfg = _read_db_section(parser, "MSSQL_SOURCE")
    target_cfg = _read_db_section(parser, "MSSQL_TARGET")
    if not parser.has_section("SETTINGS"):
        parser.add_section("SETTINGS")

    base_dir = config_path.parent.resolve()
    script_dir = (base_dir / parser.get("SETTINGS", "script_dir", fallback=DEFAULT_SCRIPT_DIR).strip()).resolve()
    report_dir = (
        base_dir / (parser.get("SETTINGS", "report_dir", fallback=DEFAULT_REPORT_DIR).strip() or DEFAULT_REPORT_DIR)
    ).resolve()

    stage_names = parse_csv_args([parser.get("SETTINGS", "stages", fallback="")]) or list(DEFAULT_STAGE_NAMES)
    stage_names = [name.lower() for name in stage_names]
    if len(set(stage_names)) != len(stage_names):
        raise ConfigError(f"[SETTINGS] stages 存在重复: {', '.join(stage_names)}")

    max_passes = _get_int(parser, "max_passes", DEFAULT_MAX_PASSES, minimum=1)
    stage_max_passes: Dict[str, int] = {}
    for name in stage_names:
        key = f"max_passes_{name}"
        if parser.has_option("SETTINGS", key):
            stage_max_passes[name] = _get_int(parser, key, max_passes, minimum=1)

    executor = parser.get("SETTINGS", "executor", fallback="sqlcmd").strip().lower() or "sqlcmd"
    if executor not in EXECUTOR_KINDS:
        raise ConfigError(f"[SETTINGS] executor 取值无效: {executor} (可选: {', '.join(sorted(EXECUTOR_KINDS))})")

    timeout = _get_int(parser, "sqlcmd_timeout", DEFAULT_SQLCMD_TIMEOUT)
    max_mb = _get_int(parser, "max_script_file_mb", DEFAULT_MAX_SCRIPT_FILE_MB)
    log_file_raw = parser.get("SETTINGS", "log_file", fallback="").strip()

    return CloneSettings(
        source_cfg=source_cfg,
        target_cfg=target_cfg,
        script_dir=script_dir,
        report_dir=report_dir,
        stage_names=stage_names,
        max_passes=max_passes,
        stage_max_passes=stage_max_passes,
        executor=executor,
        odbc_driver=parser.get("SETTINGS", "odbc_driver", fallback=DEFAULT_ODBC_DRIVER).strip() or DEFAULT_ODBC_DRIVER,
        timeout=None if timeout == 0 else timeout,
        generator_command=parser.get("SETTINGS", "generator_command", fallback="").strip(),
        create_database=parse_bool_flag(parser.get("SETTINGS", "create_database", fallback="false"), False),
        max_script_bytes=None if max_mb == 0 else max_mb * 1024 * 1024,
        log_level=parser.get("SETTINGS", "log_level", fallback="AUTO").strip().upper() or "AUTO",
        log_file=(base_dir / log_file_raw).resolve() if log_file_raw else None,
        report_width=_get_int(parser, "report_width", DEFAULT_REPORT_WIDTH, minimum=40),
    )


class PregeneratedScriptGenerator:
    """Stage scripts were produced ahead of time into script_dir."""

    def __call__(self, stage: Stage) -> Path:
        return stage.script_path


class CommandScriptGenerator:
    """
    Materialise each stage script by running an external toolkit command.

    The command template may use ``{stage}``, ``{order}``, ``{script}``,
    ``{source}`` and ``{destination}``; values are shell-quoted.
    """

    def __init__(self, command_template: str, source: str, destination: str,
                 timeout: Optional[int] = DEFAULT_GENERATOR_TIMEOUT):
        self.command_template = command_template
        self.source = source
        self.destination = destination
        self.timeout = timeout

    def build_command(self, stage: Stage) -> List[str]:
        try:
            rendered = self.command_template.format(
                stage=shlex.quote(stage.name),
                order=stage.order,
                script=shlex.quote(str(stage.script_path)),
                source=shlex.quote(self.source),
                destination=shlex.quote(self.destination),
            )
        except (KeyError, IndexError, ValueError) as exc:
            raise SetupError(f"generator_command 模板无效: {exc}") from exc
        return shlex.split(rendered)

    def __call__(self, stage: Stage) -> Path:
        cmd = self.build_command(stage)
        stage.script_path.parent.mkdir(parents=True, exist_ok=True)
        log.info("生成阶段脚本: %s", " ".join(cmd))
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise SetupError(f"脚本生成超时 (> {self.timeout} 秒): {stage.name}") from exc
        except OSError as exc:
            raise SetupError(f"调用脚本生成命令失败: {exc}") from exc
        if result.returncode != 0:
            detail = (result.stderr or result.stdout or "").strip()
            raise SetupError(f"脚本生成命令退出码 {result.returncode}: {detail[:300]}")
        if not stage.script_path.is_file():
            raise SetupError(f"脚本生成命令未产出文件: {stage.script_path}")
        return stage.script_path


def build_executor_factory(settings: CloneSettings):
    """Return a factory opening the destination session (creating the DB first if asked)."""
    target_cfg = settings.target_cfg

    def open_executor(database: Optional[str] = None):
        if settings.executor == "pyodbc":
            conn_str = build_odbc_connection_string(target_cfg, settings.odbc_driver, database=database)
            return PyodbcExecutor.connect(conn_str, timeout=settings.timeout)
        return SqlcmdExecutor(build_sqlcmd_command(target_cfg, database=database), timeout=settings.timeout)

    def factory():
        if settings.create_database:
            master = open_executor("master")
            try:
                ensure_database(master, target_cfg["database"])
            finally:
                close = getattr(master, "close", None)
                if callable(close):
                    close()
        executor = open_executor()
        ok, error = check_connectivity(executor)
        if not ok:
            close = getattr(executor, "close", None)
            if callable(close):
                close()
            raise SetupError(f"目标库连接检查失败: {error}")
        return executor

    return factory


def select_stages(settings: CloneSettings, only_stages: List[str], max_passes: Optional[int]) -> List[Stage]:
    overrides = dict(settings.stage_max_passes)
    default_passes = settings.max_passes
    if max_passes is not None:
        if max_passes < 1:
            raise ConfigError(f"--max-passes 必须大于 0: {max_passes}")
        default_passes = max_passes
        overrides = {}
    stages = build_default_stages(settings.script_dir, default_passes, overrides, names=settings.stage_names)
    if not only_stages:
        return stages
    wanted = {name.lower() for name in only_stages}
    unknown = wanted - {stage.name for stage in stages}
    if unknown:
        raise ConfigError(f"未识别的阶段: {', '.join(sorted(unknown))}")
    return [stage for stage in stages if stage.name in wanted]


def run_dry(stages: List[Stage], max_script_bytes: Optional[int]) -> int:
    log_section(log, "试运行 (仅解析脚本)")
    exit_code = EXIT_OK
    for stage in stages:
        try:
            batches = split_batches(read_stage_script(stage.script_path, max_script_bytes))
        except (SetupError, SplitError) as exc:
            log.error("%-14s -> ERROR: %s", stage.name, exc)
            exit_code = EXIT_FAILED
            continue
        log.info("%-14s -> %d 个批次 (%s)", stage.name, len(batches), stage.script_path)
    return exit_code


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    desc = textwrap.dedent(
        """\
        SQL Server 分阶段克隆执行器 - 生成脚本按 GO 拆分批次，失败批次多轮重试

        阶段顺序：
          base_schema -> constraints -> indexes -> keys -> programmables -> users

        重试策略：
          每轮执行全部待执行批次，仅失败批次进入下一轮；
          达到最大轮次或某轮无新成功批次时停止。

        版本: {version}
        """
    ).format(version=__version__)

    parser = argparse.ArgumentParser(
        description=desc,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "config",
        nargs="?",
        default=CONFIG_DEFAULT_PATH,
        help="config.ini path (default: config.ini)",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "--stages",
        action="append",
        help="Only run these stages (comma-separated)",
    )
    parser.add_argument(
        "--max-passes",
        type=int,
        default=None,
        help="Override the pass budget for every stage",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Split stage scripts and report batch counts without executing",
    )
    parser.add_argument(
        "--no-generate",
        action="store_true",
        help="Ignore generator_command and use scripts already present in script_dir",
    )
    parser.add_argument(
        "--verify",
        nargs=2,
        metavar=("SOURCE_JSON", "TARGET_JSON"),
        help="Compare source/target catalog snapshots after deployment",
    )
    parser.add_argument(
        "--issues",
        metavar="FILE",
        help="Render an issue list produced by an external comparator",
    )
    return parser.parse_args(argv)


def install_cancel_handler(cancel_event: threading.Event) -> None:
    def _handler(_signum, _frame):
        if cancel_event.is_set():
            raise KeyboardInterrupt
        log.warning("收到中断信号，当前批次完成后停止 (再次 Ctrl+C 强制退出)。")
        cancel_event.set()

    signal.signal(signal.SIGINT, _handler)


def finish_run(run: PipelineRun, settings: CloneSettings, issues=None) -> int:
    log_pipeline_summary(run, log)
    failures_by_type = analyze_failure_patterns(run)
    if failures_by_type:
        log_failure_analysis(failures_by_type, log)

    report_text = render_pipeline_report(run, width=settings.report_width, issues=issues)
    report_path = write_text_report(report_text, settings.report_dir)
    log.info("运行报告已输出: %s", report_path)
    error_path = write_error_report(run, settings.report_dir)
    if error_path:
        log.info("错误报告已输出: %s", error_path)
    json_path = write_run_json(run, settings.report_dir)
    log.info("运行摘要已输出: %s", json_path)

    log_section(log, "执行结束")
    if run.cancelled:
        return EXIT_CANCELLED
    if not run.success or issues:
        return EXIT_FAILED
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    init_console_logging()
    args = parse_args(argv)
    config_arg = Path(args.config)

    try:
        settings = load_clone_config(config_arg.resolve())
        stages = select_stages(settings, parse_csv_args(args.stages or []), args.max_passes)
    except ConfigError as exc:
        log.error("配置错误: %s", exc)
        return EXIT_FAILED

    level = resolve_console_log_level(settings.log_level)
    if settings.log_file:
        attach_file_handler(settings.log_file)
    set_console_log_level(level)
    log.info("clone_database v%s", __version__)
    log.info("配置文件: %s", config_arg.resolve())
    log.info("日志级别: console=%s", logging.getLevelName(level))

    if args.dry_run:
        return run_dry(stages, settings.max_script_bytes)

    if settings.generator_command and not args.no_generate:
        generator = CommandScriptGenerator(
            settings.generator_command,
            settings.source_label,
            settings.destination_label,
        )
    else:
        generator = PregeneratedScriptGenerator()

    cancel_event = threading.Event()
    install_cancel_handler(cancel_event)
    pipeline = StagePipeline(
        logger=log,
        cancel_event=cancel_event,
        max_script_bytes=settings.max_script_bytes,
    )

    try:
        run = pipeline.run(
            settings.source_label,
            settings.destination_label,
            stages,
            generator,
            build_executor_factory(settings),
        )
    except SetupError as exc:
        log.error("执行失败: %s", exc)
        if exc.pipeline_run is not None:
            finish_run(exc.pipeline_run, settings)
        return EXIT_FAILED

    issues = None
    try:
        if args.verify:
            log_section(log, "克隆结果校验")
            issues = compare_catalogs(
                load_catalog_snapshot(Path(args.verify[0])),
                load_catalog_snapshot(Path(args.verify[1])),
            )
            log.info("校验差异: %d", len(issues))
        if args.issues:
            issues = list(issues or []) + load_issues(Path(args.issues))
    except ConfigError as exc:
        log.error("校验输入错误: %s", exc)
        finish_run(run, settings)
        return EXIT_FAILED

    return finish_run(run, settings, issues=issues)


if __name__ == "__main__":
    sys.exit(main())
