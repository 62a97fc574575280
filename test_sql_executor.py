import subprocess
import unittest
from types import SimpleNamespace
from unittest import mock

import sql_executor as se
from batch_splitter import Batch
from clone_errors import SetupError

TARGET_CFG = {
    "server": "tcp:sql01,1433",
    "database": "SalesDb_Clone",
    "user": "clone_admin",
    "password": "p%w;x",
    "executable": "/opt/mssql-tools18/bin/sqlcmd",
}


class TestCommandBuilding(unittest.TestCase):
    def test_build_sqlcmd_command_sql_auth(self):
        cmd = se.build_sqlcmd_command(TARGET_CFG)
        self.assertEqual(cmd[0], "/opt/mssql-tools18/bin/sqlcmd")
        self.assertIn("-b", cmd)
        self.assertIn("-x", cmd)
        self.assertEqual(cmd[cmd.index("-d") + 1], "SalesDb_Clone")
        self.assertEqual(cmd[cmd.index("-U") + 1], "clone_admin")
        self.assertEqual(cmd[cmd.index("-P") + 1], "p%w;x")
        self.assertNotIn("-E", cmd)

    def test_build_sqlcmd_command_integrated_auth_and_database_override(self):
        cfg = {"server": "sql01", "database": "SalesDb"}
        cmd = se.build_sqlcmd_command(cfg, database="master")
        self.assertEqual(cmd[0], "sqlcmd")
        self.assertIn("-E", cmd)
        self.assertIn("-x", cmd)
        self.assertEqual(cmd[cmd.index("-d") + 1], "master")

    def test_build_odbc_connection_string(self):
        conn_str = se.build_odbc_connection_string(TARGET_CFG, "ODBC Driver 17 for SQL Server")
        self.assertTrue(conn_str.startswith("DRIVER={ODBC Driver 17 for SQL Server};"))
        self.assertIn("DATABASE=SalesDb_Clone;", conn_str)
        self.assertIn("UID=clone_admin;", conn_str)
        self.assertIn("TrustServerCertificate=yes;", conn_str)

    def test_mask_secret(self):
        self.assertEqual(se.mask_secret("UID=a;PWD=secret;"), "UID=a;PWD=***;")
        self.assertEqual(se.mask_secret("sqlcmd -U a -P secret -b"), "sqlcmd -U a -P *** -b")


class TestErrorExtraction(unittest.TestCase):
    def test_extract_sql_error_includes_message_line(self):
        output = "\n".join([
            "Changed database context to 'SalesDb_Clone'.",
            "Msg 208, Level 16, State 1, Server sql01, Line 1",
            "Invalid object name 'dbo.Orders'.",
        ])
        error = se.extract_sql_error(output)
        self.assertIn("Msg 208", error)
        self.assertIn("Invalid object name 'dbo.Orders'.", error)

    def test_informational_messages_are_not_errors(self):
        output = "Msg 5701, Level 10, State 1\nChanged database context."
        self.assertIsNone(se.extract_sql_error(output))

    def test_sqlcmd_level_error(self):
        output = "Sqlcmd: Error: Microsoft ODBC Driver 18 for SQL Server : Login timeout expired."
        self.assertIn("Login timeout expired", se.extract_sql_error(output))

    def test_nonzero_exit_without_pattern_uses_raw_output(self):
        result = SimpleNamespace(returncode=1, stderr="boom", stdout="")
        self.assertEqual(se.extract_execution_error(result), "boom")


class TestSqlcmdExecutor(unittest.TestCase):
    def test_success_pipes_batch_with_go_terminator(self):
        captured = {}

        def fake_run(cmd, **kwargs):
            captured["cmd"] = cmd
            captured.update(kwargs)
            return SimpleNamespace(returncode=0, stderr="", stdout="(1 rows affected)")

        executor = se.SqlcmdExecutor(["sqlcmd", "-S", "x"], timeout=30)
        with mock.patch.object(se.subprocess, "run", side_effect=fake_run):
            ok, error = executor(Batch(index=0, text="CREATE TABLE dbo.T(Id int)"))

        self.assertTrue(ok)
        self.assertIsNone(error)
        self.assertEqual(captured["input"], "CREATE TABLE dbo.T(Id int)\nGO\n")
        self.assertEqual(captured["timeout"], 30)
        self.assertTrue(captured["start_new_session"])

    def test_scripting_variable_syntax_reaches_server_unchanged(self):
        captured = {}

        def fake_run(cmd, **kwargs):
            captured["cmd"] = cmd
            captured["input"] = kwargs["input"]
            return SimpleNamespace(returncode=0, stderr="", stdout="")

        sql = "SET @cmd = N'Write-Host $(Get-Date)';\nEXEC dbo.RunPs @cmd"
        executor = se.SqlcmdExecutor(se.build_sqlcmd_command(TARGET_CFG))
        with mock.patch.object(se.subprocess, "run", side_effect=fake_run):
            ok, _error = executor.execute_sql(sql)
        self.assertTrue(ok)
        self.assertIn("-x", captured["cmd"])
        self.assertEqual(captured["input"], sql + "\nGO\n")

    def test_sql_error_on_stdout_is_failure(self):
        def fake_run(_cmd, **_kwargs):
            return SimpleNamespace(
                returncode=1,
                stderr="",
                stdout="Msg 1767, Level 16, State 0\nForeign key 'FK_1' references invalid table 'dbo.Orders'.",
            )

        executor = se.SqlcmdExecutor(["sqlcmd"])
        with mock.patch.object(se.subprocess, "run", side_effect=fake_run):
            ok, error = executor.execute_sql("ALTER TABLE dbo.L ADD CONSTRAINT FK_1 ...")
        self.assertFalse(ok)
        self.assertIn("Msg 1767", error)

    def test_timeout_is_ordinary_failure(self):
        executor = se.SqlcmdExecutor(["sqlcmd"], timeout=5)
        with mock.patch.object(se.subprocess, "run", side_effect=subprocess.TimeoutExpired("sqlcmd", 5)):
            ok, error = executor.execute_sql("WAITFOR DELAY '00:10:00'")
        self.assertFalse(ok)
        self.assertIn("执行超时", error)
        self.assertIn("5", error)

    def test_zero_timeout_means_no_timeout(self):
        self.assertIsNone(se.SqlcmdExecutor(["sqlcmd"], timeout=0).timeout)

    def test_missing_binary_is_setup_error(self):
        executor = se.SqlcmdExecutor(["/nope/sqlcmd"])
        with mock.patch.object(se.subprocess, "run", side_effect=FileNotFoundError("/nope/sqlcmd")):
            with self.assertRaises(SetupError):
                executor.execute_sql("SELECT 1")


class FakeOdbcError(Exception):
    pass


class TestPyodbcExecutor(unittest.TestCase):
    def make_fake_pyodbc(self, connection=None, connect_error=None):
        def connect(_conn_str, autocommit=False):
            if connect_error:
                raise connect_error
            self.assertTrue(autocommit)
            return connection

        return SimpleNamespace(Error=FakeOdbcError, connect=connect)

    def test_execute_success_drains_result_sets(self):
        cursor = mock.Mock()
        cursor.nextset.side_effect = [True, False]
        connection = mock.Mock()
        connection.cursor.return_value = cursor
        with mock.patch.object(se, "pyodbc", self.make_fake_pyodbc(connection)):
            executor = se.PyodbcExecutor.connect("DRIVER={x};SERVER=s;PWD=secret;")
            ok, error = executor(Batch(index=0, text="SELECT 1; SELECT 2"))
            executor.close()
        self.assertTrue(ok)
        self.assertIsNone(error)
        cursor.execute.assert_called_once_with("SELECT 1; SELECT 2")
        self.assertEqual(cursor.nextset.call_count, 2)
        cursor.close.assert_called_once()
        connection.close.assert_called_once()

    def test_execute_error_is_reported_not_raised(self):
        cursor = mock.Mock()
        cursor.execute.side_effect = FakeOdbcError("42S02", "[42S02] Invalid object name 'dbo.X'. (208)")
        connection = mock.Mock()
        connection.cursor.return_value = cursor
        with mock.patch.object(se, "pyodbc", self.make_fake_pyodbc(connection)):
            executor = se.PyodbcExecutor.connect("DRIVER={x};")
            ok, error = executor.execute_sql("SELECT * FROM dbo.X")
        self.assertFalse(ok)
        self.assertIn("Invalid object name", error)

    def test_connect_failure_is_setup_error_with_masked_password(self):
        fake = self.make_fake_pyodbc(connect_error=FakeOdbcError("08001", "cannot connect"))
        with mock.patch.object(se, "pyodbc", fake):
            with self.assertRaises(SetupError) as ctx:
                se.PyodbcExecutor.connect("SERVER=s;PWD=secret;")
        self.assertNotIn("secret", str(ctx.exception))

    def test_missing_driver_module_is_setup_error(self):
        with mock.patch.object(se, "pyodbc", None):
            with self.assertRaises(SetupError):
                se.PyodbcExecutor.connect("SERVER=s;")


class TestDestinationHelpers(unittest.TestCase):
    def test_check_connectivity(self):
        good = SimpleNamespace(execute_sql=lambda _sql: (True, None))
        bad = SimpleNamespace(execute_sql=lambda _sql: (False, "Login failed for user 'x'."))
        self.assertEqual(se.check_connectivity(good), (True, ""))
        self.assertEqual(se.check_connectivity(bad), (False, "Login failed for user 'x'."))

    def test_ensure_database_quotes_name(self):
        seen = []
        master = SimpleNamespace(execute_sql=lambda sql: seen.append(sql) or (True, None))
        self.assertTrue(se.ensure_database(master, "Sales]DB'"))
        self.assertIn("DB_ID(N'Sales]DB''')", seen[0])
        self.assertIn("CREATE DATABASE [Sales]]DB']", seen[0])

    def test_ensure_database_failure_is_setup_error(self):
        master = SimpleNamespace(execute_sql=lambda _sql: (False, "Msg 262, Level 14"))
        with self.assertRaises(SetupError):
            se.ensure_database(master, "SalesDb")


if __name__ == "__main__":
    unittest.main()
