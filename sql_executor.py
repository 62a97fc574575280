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
Batch executors for the SQL Server destination.

Both executors are callables ``execute(batch) -> (ok, error_message)``. SQL
errors and timeouts come back as ``(False, message)`` so the scheduler can
retry them; only conditions that make the executor itself unusable (missing
sqlcmd binary, no ODBC driver) raise SetupError.
"""

from __future__ import annotations

import logging
import re
import subprocess
from typing import Dict, List, Optional, Tuple

from batch_splitter import Batch
from clone_errors import SetupError

try:
    import pyodbc
except ImportError:
    pyodbc = None

log = logging.getLogger(__name__)

DEFAULT_SQLCMD_EXECUTABLE = "sqlcmd"
DEFAULT_SQLCMD_TIMEOUT = 3600
DEFAULT_ODBC_DRIVER = "ODBC Driver 18 for SQL Server"

# Msg 208, Level 16, State 1, Server X, Line 1
RE_SQL_ERROR = re.compile(r"^\s*Msg\s+\d+,\s*Level\s+(?P<level>\d+)", re.IGNORECASE | re.MULTILINE)
RE_SQLCMD_ERROR = re.compile(r"^\s*Sqlcmd:\s*Error:", re.IGNORECASE | re.MULTILINE)
# Severity 10 and below are informational messages.
MIN_ERROR_SEVERITY = 11


def build_sqlcmd_command(db_cfg: Dict[str, str], database: Optional[str] = None) -> List[str]:
    """Assemble the sqlcmd command line; SQL auth when a user is configured, else -E."""
    cmd = [
        db_cfg.get("executable") or DEFAULT_SQLCMD_EXECUTABLE,
        "-S", db_cfg["server"],
        "-d", database or db_cfg["database"],
        "-b",
        "-I",
        "-r", "1",
        # ignore scripting variables: $(name) in batch text is sent as written
        "-x",
    ]
    if db_cfg.get("user"):
        cmd.extend(["-U", db_cfg["user"], "-P", db_cfg.get("password", "")])
    else:
        cmd.append("-E")
    return cmd


def build_odbc_connection_string(
    db_cfg: Dict[str, str],
    driver: str = DEFAULT_ODBC_DRIVER,
    database: Optional[str] = None,
) -> str:
    parts = [
        f"DRIVER={{{driver}}}",
        f"SERVER={db_cfg['server']}",
        f"DATABASE={database or db_cfg['database']}",
    ]
    if db_cfg.get("user"):
        parts.append(f"UID={db_cfg['user']}")
        parts.append(f"PWD={db_cfg.get('password', '')}")
    else:
        parts.append("Trusted_Connection=yes")
    if db_cfg.get("trust_server_certificate", "yes").lower() in ("1", "true", "yes", "on"):
        parts.append("TrustServerCertificate=yes")
    return ";".join(parts) + ";"


def mask_secret(text: str) -> str:
    masked = re.sub(r"(?i)(pwd|password)=[^;]+", r"\1=***", text)
    return re.sub(r"(-P\s+)\S+", r"\1***", masked)


def extract_sql_error(output: str) -> Optional[str]:
    """Return the first error block (header plus message line) found in sqlcmd output."""
    if not output:
        return None
    lines = output.splitlines()
    for idx, line in enumerate(lines):
        match = RE_SQL_ERROR.match(line)
        if match:
            if int(match.group("level")) < MIN_ERROR_SEVERITY:
                continue
            message = line.strip()
            if idx + 1 < len(lines) and lines[idx + 1].strip():
                message = f"{message} {lines[idx + 1].strip()}"
            return message
        if RE_SQLCMD_ERROR.match(line):
            return line.strip()
    return None


def extract_execution_error(result: subprocess.CompletedProcess) -> Optional[str]:
    stderr = (result.stderr or "").strip()
    stdout = (result.stdout or "").strip()
    error = extract_sql_error(stderr) or extract_sql_error(stdout)
    if error:
        return error
    if result.returncode != 0:
        return stderr or stdout or f"sqlcmd 退出码 {result.returncode}"
    return None


class SqlcmdExecutor:
    """Pipe each batch to a fresh sqlcmd process."""

    def __init__(self, sqlcmd_cmd: List[str], timeout: Optional[int] = DEFAULT_SQLCMD_TIMEOUT):
        self.sqlcmd_cmd = list(sqlcmd_cmd)
        self.timeout = timeout or None

    def run_sql(self, sql_text: str) -> subprocess.CompletedProcess:
        try:
            # own session: a terminal Ctrl+C must not kill a batch mid-statement
            return subprocess.run(
                self.sqlcmd_cmd,
                input=f"{sql_text}\nGO\n",
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout,
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            raise SetupError(f"sqlcmd 不存在或不可执行: {exc}") from exc
        except PermissionError as exc:
            raise SetupError(f"sqlcmd 权限不足: {exc}") from exc

    def execute_sql(self, sql_text: str) -> Tuple[bool, Optional[str]]:
        try:
            result = self.run_sql(sql_text)
        except subprocess.TimeoutExpired:
            timeout_label = "no-timeout" if self.timeout is None else f"> {self.timeout} 秒"
            return False, f"执行超时 ({timeout_label})"
        except OSError as exc:
            return False, f"调用 sqlcmd 失败: {exc}"
        error = extract_execution_error(result)
        if error:
            return False, error
        return True, None

    def __call__(self, batch: Batch) -> Tuple[bool, Optional[str]]:
        return self.execute_sql(batch.text)


class PyodbcExecutor:
    """Run batches over one autocommit pyodbc connection."""

    def __init__(self, connection, timeout: Optional[int] = None):
        self.connection = connection
        if timeout:
            self.connection.timeout = timeout

    @classmethod
    def connect(cls, conn_str: str, timeout: Optional[int] = None) -> "PyodbcExecutor":
        if pyodbc is None:
            raise SetupError("缺少 'pyodbc' 库，请先安装: pip install pyodbc")
        try:
            connection = pyodbc.connect(conn_str, autocommit=True)
        except pyodbc.Error as exc:
            raise SetupError(f"连接失败 ({mask_secret(conn_str)}): {exc}") from exc
        return cls(connection, timeout=timeout)

    def execute_sql(self, sql_text: str) -> Tuple[bool, Optional[str]]:
        cursor = self.connection.cursor()
        try:
            cursor.execute(sql_text)
            # drain remaining result sets so errors raised by later statements surface
            while cursor.nextset():
                pass
        except pyodbc.Error as exc:
            return False, " ".join(str(exc).split())
        finally:
            cursor.close()
        return True, None

    def __call__(self, batch: Batch) -> Tuple[bool, Optional[str]]:
        return self.execute_sql(batch.text)

    def close(self) -> None:
        self.connection.close()


def check_connectivity(executor) -> Tuple[bool, str]:
    """Run a lightweight connectivity check with SELECT 1."""
    ok, error = executor.execute_sql("SELECT 1;")
    if not ok:
        return False, error or "执行失败"
    return True, ""


def quote_identifier(name: str) -> str:
    return "[" + name.replace("]", "]]") + "]"


def ensure_database(master_executor, database: str) -> bool:
    """
    Create ``database`` through an executor bound to master if it is missing.

    Returns True when the statement ran; raises SetupError otherwise.
    """
    literal = database.replace("'", "''")
    sql = (
        f"IF DB_ID(N'{literal}') IS NULL\n"
        f"    CREATE DATABASE {quote_identifier(database)};"
    )
    ok, error = master_executor.execute_sql(sql)
    if not ok:
        raise SetupError(f"无法创建目标数据库 {database}: {error}")
    log.info("目标数据库已就绪: %s", database)
    return True
