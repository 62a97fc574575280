import logging
import re
import threading
import unittest

import retry_scheduler as rs
from batch_splitter import Batch, BatchStatus, split_batches

FORWARD_REFERENCE_BATCHES = [
    "CREATE TABLE Orders(Id int PRIMARY KEY)",
    "ALTER TABLE OrderLines ADD FOREIGN KEY (OrderId) REFERENCES Orders(Id)",
    "CREATE TABLE OrderLines(Id int, OrderId int)",
]

RE_CREATE = re.compile(r"^CREATE TABLE (\w+)", re.IGNORECASE)
RE_ALTER_FK = re.compile(r"^ALTER TABLE (\w+) .* REFERENCES (\w+)", re.IGNORECASE)


class FakeDatabase:
    """Tiny stand-in for a destination: tracks created tables, fails on missing ones."""

    def __init__(self):
        self.tables = set()
        self.calls = []

    def __call__(self, batch):
        self.calls.append(batch.index)
        create = RE_CREATE.match(batch.text)
        if create:
            self.tables.add(create.group(1))
            return True, None
        alter = RE_ALTER_FK.match(batch.text)
        if alter:
            for table in alter.groups():
                if table not in self.tables:
                    return False, f"Msg 4902, Level 16, State 1\nCannot find the object \"{table}\""
            return True, None
        return False, "Msg 102, Level 15, State 1\nIncorrect syntax"


def make_batches(texts):
    return [Batch(index=idx, text=text) for idx, text in enumerate(texts)]


class TestRetrySchedulerProperties(unittest.TestCase):
    def setUp(self):
        self.scheduler = rs.RetryScheduler(logger=logging.getLogger("test_retry_scheduler"))

    def test_all_batches_succeed_in_one_pass(self):
        batches = make_batches(["CREATE TABLE A(x int)", "CREATE TABLE B(x int)"])
        db = FakeDatabase()
        outcome = self.scheduler.run(batches, db, max_passes=5)
        self.assertTrue(outcome.success)
        self.assertEqual(outcome.passes_used, 1)
        self.assertEqual(outcome.failed_batches, [])
        self.assertEqual(outcome.executed, 2)
        self.assertTrue(all(b.status == BatchStatus.SUCCEEDED for b in batches))

    def test_forward_reference_resolves_on_second_pass(self):
        db = FakeDatabase()
        outcome = self.scheduler.run(make_batches(FORWARD_REFERENCE_BATCHES), db, max_passes=10)
        self.assertTrue(outcome.success)
        self.assertEqual(outcome.passes_used, 2)
        self.assertEqual(outcome.failed_batches, [])
        self.assertEqual(db.calls, [0, 1, 2, 1])

    def test_budget_exhaustion_reports_pending_batch(self):
        db = FakeDatabase()
        outcome = self.scheduler.run(make_batches(FORWARD_REFERENCE_BATCHES), db, max_passes=1)
        self.assertFalse(outcome.success)
        self.assertEqual(outcome.passes_used, 1)
        self.assertEqual([b.index for b in outcome.failed_batches], [1])
        self.assertIn("OrderLines", outcome.failed_batches[0].last_error)
        self.assertEqual(outcome.failed_batches[0].status, BatchStatus.FAILED)

    def test_mutual_dependency_cycle_terminates(self):
        done = set()

        def execute(batch):
            other = "B" if batch.text == "A" else "A"
            if other in done:
                done.add(batch.text)
                return True, None
            return False, f"{batch.text} needs {other}"

        outcome = self.scheduler.run(make_batches(["A", "B"]), execute, max_passes=50)
        self.assertFalse(outcome.success)
        self.assertLessEqual(outcome.passes_used, 2)
        self.assertEqual([b.index for b in outcome.failed_batches], [0, 1])
        self.assertEqual(outcome.executed, 2 * outcome.passes_used)

    def test_no_progress_stops_before_budget(self):
        calls = []

        def execute(batch):
            calls.append(batch.index)
            if batch.index == 1:
                return True, None
            return False, "permanent failure"

        outcome = self.scheduler.run(make_batches(["x", "y", "z"]), execute, max_passes=10)
        self.assertFalse(outcome.success)
        self.assertEqual(outcome.passes_used, 2)
        self.assertEqual(len(calls), 5)
        self.assertEqual([b.index for b in outcome.failed_batches], [0, 2])

    def test_order_preserved_within_every_pass(self):
        attempts = {}
        calls = []

        def execute(batch):
            calls.append(batch.index)
            attempts[batch.index] = attempts.get(batch.index, 0) + 1
            # batch i succeeds on attempt (i % 3) + 1
            if attempts[batch.index] > batch.index % 3:
                return True, None
            return False, "not yet"

        outcome = self.scheduler.run(make_batches([str(i) for i in range(7)]), execute, max_passes=10)
        self.assertTrue(outcome.success)
        self.assertEqual(outcome.passes_used, 3)
        pass_one, pass_two, pass_three = calls[:7], calls[7:11], calls[11:]
        self.assertEqual(pass_one, list(range(7)))
        self.assertEqual(pass_two, [1, 2, 4, 5])
        self.assertEqual(pass_three, [2, 5])

    def test_succeeded_batch_is_never_reexecuted(self):
        db = FakeDatabase()
        self.scheduler.run(make_batches(FORWARD_REFERENCE_BATCHES), db, max_passes=10)
        self.assertEqual(db.calls.count(0), 1)
        self.assertEqual(db.calls.count(2), 1)


class TestRetrySchedulerEdgeCases(unittest.TestCase):
    def setUp(self):
        self.scheduler = rs.RetryScheduler(logger=logging.getLogger("test_retry_scheduler"))

    def test_empty_input_is_success_without_passes(self):
        outcome = self.scheduler.run([], lambda _b: (False, "never"), max_passes=3)
        self.assertTrue(outcome.success)
        self.assertEqual(outcome.passes_used, 0)

    def test_zero_passes_is_failure_with_everything_pending(self):
        calls = []
        batches = make_batches(["SELECT 1", "SELECT 2"])
        outcome = self.scheduler.run(batches, lambda b: calls.append(b) or (True, None), max_passes=0)
        self.assertFalse(outcome.success)
        self.assertEqual(outcome.passes_used, 0)
        self.assertEqual(outcome.failed_batches, batches)
        self.assertEqual(calls, [])

    def test_executor_exception_propagates(self):
        def execute(_batch):
            raise RuntimeError("connection pool exhausted")

        with self.assertRaises(RuntimeError):
            self.scheduler.run(make_batches(["SELECT 1"]), execute, max_passes=3)

    def test_failure_without_message_gets_default_error(self):
        outcome = self.scheduler.run(make_batches(["SELECT 1"]), lambda _b: (False, None), max_passes=1)
        self.assertEqual(outcome.failed_batches[0].last_error, "执行失败")

    def test_cancellation_is_honored_between_batches(self):
        cancel = threading.Event()
        calls = []

        def execute(batch):
            calls.append(batch.index)
            cancel.set()
            return True, None

        scheduler = rs.RetryScheduler(cancel_event=cancel)
        batches = make_batches(["a", "b", "c"])
        outcome = scheduler.run(batches, execute, max_passes=3)
        self.assertTrue(outcome.cancelled)
        self.assertFalse(outcome.success)
        self.assertEqual(calls, [0])
        self.assertEqual(batches[0].status, BatchStatus.SUCCEEDED)
        self.assertEqual([b.index for b in outcome.failed_batches], [1, 2])
        self.assertEqual(batches[1].status, BatchStatus.PENDING)

    def test_outcome_is_frozen(self):
        outcome = self.scheduler.run([], lambda _b: (True, None), max_passes=1)
        with self.assertRaises(Exception):
            outcome.success = False

    def test_failure_records_carry_pass_and_batch_fields(self):
        logger = logging.getLogger("test_retry_scheduler.fields")
        scheduler = rs.RetryScheduler(logger=logger)
        with self.assertLogs(logger, level="WARNING") as captured:
            scheduler.run(make_batches(["bad"]), lambda _b: (False, "Msg 102, Level 15"), max_passes=2)
        failure_records = [r for r in captured.records if hasattr(r, "batch_index")]
        self.assertTrue(failure_records)
        self.assertEqual(failure_records[0].fixup_pass, 1)
        self.assertEqual(failure_records[0].batch_index, 0)

    def test_runs_split_output_directly(self):
        script = "\nGO\n".join(FORWARD_REFERENCE_BATCHES)
        outcome = self.scheduler.run(split_batches(script), FakeDatabase(), max_passes=2)
        self.assertTrue(outcome.success)
        self.assertEqual(outcome.total_batches, 3)
        self.assertEqual(outcome.succeeded_count, 3)


if __name__ == "__main__":
    unittest.main()
