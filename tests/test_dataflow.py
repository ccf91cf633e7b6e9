"""
Tests for the dataflow engine: joins, failure propagation, failure policies
and the CPU unit budget.
"""

import threading
import time
import unittest
from unittest.mock import patch
from pathlib import Path

from genome2gem.dataflow import (
    Artifact,
    Channel,
    CpuBudget,
    Engine,
    Process,
    RunAborted,
    StageError,
    UpstreamError,
    cross_join,
)
from genome2gem.samples import Sample


def make_samples(*ids):
    return [Sample(sample_id, Path(f"/data/raw/{sample_id}.fna")) for sample_id in ids]


def passthrough(artifact, *broadcast):
    return Artifact(artifact.sample_id, artifact.files, {"broadcast": broadcast})


class TestCrossJoin(unittest.TestCase):

    def test_one_singleton_keeps_cardinality(self):
        """Test that one singleton yields one pair per item."""
        pairs = cross_join(["A", "B", "C"], ["token"])
        self.assertEqual(pairs, [("A", "token"), ("B", "token"), ("C", "token")])

    def test_no_items(self):
        """Test cross join with no items."""
        self.assertEqual(cross_join([], ["token"]), [])


class TestChannels(unittest.TestCase):
    """Test per-sample mapping and broadcast joins."""

    def test_map_runs_once_per_sample(self):
        """Test that map runs a stage once per sample."""
        seen = []
        lock = threading.Lock()

        def stage(artifact):
            with lock:
                seen.append(artifact.sample_id)
            return artifact

        with Engine(max_cpus=2) as engine:
            out = Channel.from_samples(engine, make_samples("A", "B", "C")).map(Process("stage", stage))
            engine.wait()

        self.assertEqual(sorted(seen), ["A", "B", "C"])
        self.assertEqual(sorted(out.results()), ["A", "B", "C"])
        self.assertEqual(out.errors(), {})

    def test_combine_with_broadcast_yields_one_task_per_sample(self):
        """Test that a broadcast join yields one task per sample."""
        calls = []
        token_calls = []

        def prepare():
            token_calls.append(1)
            return "token"

        def build(artifact, token):
            calls.append((artifact.sample_id, token))
            return Artifact(artifact.sample_id, artifact.files)

        with Engine(max_cpus=4) as engine:
            token = engine.once("prepare", prepare)
            samples = Channel.from_samples(engine, make_samples("A", "B", "C", "D"))
            models = samples.combine(token).map(Process("build", build, cpus=2))
            engine.wait()

        self.assertEqual(len(token_calls), 1)
        self.assertEqual(sorted(calls), [("A", "token"), ("B", "token"), ("C", "token"), ("D", "token")])
        self.assertEqual(len(models.results()), 4)
        self.assertEqual(len(engine.records_for("build")), 4)

    def test_combined_map_pairs_through_cross_join(self):
        """Test that a combined channel pairs its items with the broadcast via cross_join."""
        with patch("genome2gem.dataflow.cross_join", wraps=cross_join) as joiner:
            with Engine(max_cpus=2) as engine:
                token = engine.once("prepare", lambda: "token")
                samples = Channel.from_samples(engine, make_samples("A", "B"))
                samples.combine(token).map(Process("build", passthrough))
                engine.wait()

        joiner.assert_called_once()
        self.assertEqual([sample_id for sample_id, _ in joiner.call_args[0][0]], ["A", "B"])

    def test_combine_twice_rejected(self):
        """Test that a channel can be combined only once."""
        with Engine() as engine:
            token = engine.once("prepare", lambda: 1)
            channel = Channel.from_samples(engine, make_samples("A")).combine(token)
            with self.assertRaises(ValueError):
                channel.combine(token)
            engine.wait()

    def test_ids_preserved_through_chain(self):
        """Test that sample ids survive chained stages."""
        with Engine(max_cpus=2) as engine:
            first = Channel.from_samples(engine, make_samples("A", "B")).map(Process("one", passthrough))
            second = first.map(Process("two", passthrough))
            engine.wait()

        for sample_id, artifact in second.results().items():
            self.assertEqual(artifact.sample_id, sample_id)

    def test_artifact_for_another_sample_is_rejected(self):
        """Test that a stage cannot change the sample id."""
        def mislabel(artifact):
            return Artifact("other", artifact.files)

        with Engine(failure_policy="isolate") as engine:
            out = Channel.from_samples(engine, make_samples("A")).map(Process("bad", mislabel))
            engine.wait()

        error = out.errors()["A"]
        self.assertIsInstance(error, StageError)
        self.assertIsInstance(error.cause, ValueError)

    def test_non_artifact_result_is_rejected(self):
        """Test that a stage must return an Artifact."""
        with Engine(failure_policy="isolate") as engine:
            out = Channel.from_samples(engine, make_samples("A")).map(Process("bad", lambda a: "x"))
            engine.wait()

        self.assertIsInstance(out.errors()["A"].cause, TypeError)


class TestFailurePropagation(unittest.TestCase):
    """Test upstream failures and the two failure policies."""

    @staticmethod
    def failing_for(bad_id):
        def stage(artifact):
            if artifact.sample_id == bad_id:
                raise RuntimeError(f"boom {bad_id}")
            return artifact
        return stage

    def test_upstream_failure_skips_dependant(self):
        """Test that a failure skips downstream tasks."""
        downstream_calls = []

        def downstream(artifact):
            downstream_calls.append(artifact.sample_id)
            return artifact

        with Engine(max_cpus=2, failure_policy="isolate") as engine:
            first = Channel.from_samples(engine, make_samples("A", "B")).map(
                Process("first", self.failing_for("B"))
            )
            second = first.map(Process("second", downstream))
            engine.wait()

        self.assertEqual(downstream_calls, ["A"])
        self.assertIsInstance(first.errors()["B"], StageError)
        self.assertIsInstance(second.errors()["B"], UpstreamError)
        self.assertEqual(list(second.results()), ["A"])

        statuses = {(r.stage, r.sample_id): r.status for r in engine.records}
        self.assertEqual(statuses[("first", "B")], "failed")
        self.assertEqual(statuses[("second", "B")], "skipped")
        self.assertEqual(statuses[("second", "A")], "succeeded")

    def test_isolate_records_only_real_failures(self):
        """Test that skipped tasks are not counted as failures."""
        with Engine(max_cpus=2, failure_policy="isolate") as engine:
            first = Channel.from_samples(engine, make_samples("A", "B", "C")).map(
                Process("first", self.failing_for("B"))
            )
            first.map(Process("second", passthrough))
            engine.wait()

        self.assertEqual([(f.stage, f.sample_id) for f in engine.failures], [("first", "B")])
        self.assertFalse(engine.aborted)

    def test_abort_stops_new_tasks(self):
        """Test that abort stops tasks that have not started."""
        # One worker: tasks run in submission order, so B is still queued
        # when A fails.
        with Engine(max_cpus=1, failure_policy="abort") as engine:
            out = Channel.from_samples(engine, make_samples("A", "B")).map(
                Process("first", self.failing_for("A"))
            )
            engine.wait()

        self.assertTrue(engine.aborted)
        self.assertIsInstance(out.errors()["A"], StageError)
        self.assertIsInstance(out.errors()["B"], RunAborted)
        self.assertEqual(engine.records_for("first")[1].status, "cancelled")

    def test_failed_broadcast_fails_every_consumer(self):
        """Test that a failed broadcast skips every consumer."""
        calls = []

        def prepare():
            raise RuntimeError("index missing")

        def build(artifact, token):
            calls.append(artifact.sample_id)
            return artifact

        with Engine(max_cpus=2, failure_policy="isolate") as engine:
            token = engine.once("prepare", prepare)
            models = Channel.from_samples(engine, make_samples("A", "B")).combine(token).map(
                Process("build", build)
            )
            engine.wait()

        self.assertEqual(calls, [])
        self.assertTrue(token.failed())
        self.assertEqual(set(models.errors()), {"A", "B"})
        self.assertIsNone(engine.failures[0].sample_id)

    def test_stage_error_message(self):
        """Test the StageError message."""
        error = StageError("find_genes", "A", RuntimeError("no proteins"))
        self.assertEqual(str(error), "find_genes[A] failed: no proteins")


class TestCpuBudget(unittest.TestCase):
    """Test admission control."""

    def test_rejects_empty_budget(self):
        """Test that a zero CPU budget is rejected."""
        with self.assertRaises(ValueError):
            CpuBudget(0)

    def test_clamps_large_requests(self):
        """Test that oversized CPU requests are clamped."""
        budget = CpuBudget(2)
        with self.assertLogs("genome2gem.dataflow", level="WARNING"):
            taken = budget.acquire(8)
        self.assertEqual(taken, 2)
        budget.release(taken)

    def test_concurrent_use_never_exceeds_budget(self):
        """Test that running tasks never exceed the CPU budget."""
        def slow(artifact):
            time.sleep(0.05)
            return artifact

        with Engine(max_cpus=4) as engine:
            Channel.from_samples(engine, make_samples(*"ABCDEF")).map(Process("slow", slow, cpus=2))
            engine.wait()

        self.assertLessEqual(engine.budget.peak_in_use, 4)
        self.assertEqual(engine.budget.peak_in_use % 2, 0)
        self.assertTrue(all(r.status == "succeeded" for r in engine.records))

    def test_task_larger_than_budget_still_runs(self):
        """Test that an oversized task still runs."""
        with Engine(max_cpus=1) as engine:
            out = Channel.from_samples(engine, make_samples("A")).map(Process("big", passthrough, cpus=8))
            engine.wait()
        self.assertIn("A", out.results())


class TestArtifact(unittest.TestCase):

    def test_file_with_suffix(self):
        """Test file lookup by suffix."""
        artifact = Artifact("A", (Path("genes/A.ffn"), Path("genes/A.faa")))
        self.assertEqual(artifact.path, Path("genes/A.ffn"))
        self.assertEqual(artifact.file_with_suffix(".faa"), Path("genes/A.faa"))
        with self.assertRaises(KeyError):
            artifact.file_with_suffix(".gff")


if __name__ == '__main__':
    unittest.main()
