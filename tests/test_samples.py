"""
Tests for sample discovery and sample id derivation.
"""

import unittest
import tempfile
import shutil
from pathlib import Path

from genome2gem.samples import (
    Sample,
    SampleError,
    DuplicateSampleError,
    derive_sample_id,
    discover_samples,
)


class TestDeriveSampleId(unittest.TestCase):
    """Id is the file name up to the first extension marker."""

    def test_fna_extension(self):
        """Test id derivation from a .fna file name."""
        self.assertEqual(derive_sample_id("A.fna"), "A")

    def test_fasta_extension(self):
        """Test id derivation from a .fasta file name."""
        self.assertEqual(derive_sample_id("B.fasta"), "B")

    def test_splits_on_first_marker(self):
        """Test that the id ends at the first extension marker."""
        self.assertEqual(derive_sample_id("x.final.fna"), "x")

    def test_dots_before_marker_are_kept(self):
        """Test that dots before the marker stay in the id."""
        self.assertEqual(derive_sample_id("E.coli.K12.fasta"), "E.coli.K12")

    def test_path_uses_file_name_only(self):
        """Test that parent directories do not affect the id."""
        self.assertEqual(derive_sample_id("/data/raw.f/strain7.fna"), "strain7")

    def test_name_without_marker_is_returned_whole(self):
        """Test a file name with no extension marker."""
        self.assertEqual(derive_sample_id("genome"), "genome")

    def test_empty_id_raises(self):
        """Test that a file name starting with the marker is rejected."""
        with self.assertRaises(SampleError):
            derive_sample_id(".fasta")


class TestDiscoverSamples(unittest.TestCase):
    """Test enumeration of assemblies under raw/."""

    def setUp(self):
        """Set up test fixtures."""
        self.tmpdir = Path(tempfile.mkdtemp())
        self.raw = self.tmpdir / "raw"
        self.raw.mkdir()

    def tearDown(self):
        """Clean up test fixtures."""
        shutil.rmtree(self.tmpdir)

    def _touch(self, *names):
        for name in names:
            (self.raw / name).write_text(">contig\nACGT\n")

    def test_discovers_both_extensions(self):
        """Test discovery of .fna and .fasta assemblies."""
        self._touch("A.fna", "B.fasta")

        samples = discover_samples(self.tmpdir)

        self.assertEqual(
            samples,
            [Sample("A", self.raw / "A.fna"), Sample("B", self.raw / "B.fasta")],
        )

    def test_ignores_other_files(self):
        """Test that non-assembly files are skipped."""
        self._touch("A.fna", "notes.txt", "C.fa", "D.fna.gz", ".hidden.fna")
        (self.raw / "nested").mkdir()
        (self.raw / "nested" / "E.fna").write_text(">c\nA\n")

        samples = discover_samples(self.tmpdir)

        self.assertEqual([s.id for s in samples], ["A"])

    def test_samples_sorted_by_id(self):
        """Test that samples come back ordered by id."""
        self._touch("zeta.fna", "alpha.fasta", "mid.fna")

        samples = discover_samples(self.tmpdir)

        self.assertEqual([s.id for s in samples], ["alpha", "mid", "zeta"])

    def test_empty_directory_returns_no_samples(self):
        """Test discovery in an empty raw directory."""
        with self.assertLogs("genome2gem.samples", level="WARNING"):
            samples = discover_samples(self.tmpdir)
        self.assertEqual(samples, [])

    def test_missing_raw_directory_raises(self):
        """Test discovery without a raw directory."""
        shutil.rmtree(self.raw)
        with self.assertRaises(FileNotFoundError):
            discover_samples(self.tmpdir)

    def test_duplicate_ids_rejected(self):
        """Test that colliding sample ids are all named in the error."""
        self._touch("A.fna", "A.fasta", "B.fna")

        with self.assertRaises(DuplicateSampleError) as cm:
            discover_samples(self.tmpdir)

        self.assertEqual(set(cm.exception.collisions), {"A"})
        message = str(cm.exception)
        self.assertIn("A.fna", message)
        self.assertIn("A.fasta", message)

    def test_duplicate_error_is_sample_error(self):
        """Test the duplicate error hierarchy."""
        self._touch("x.final.fna", "x.fasta")
        with self.assertRaises(SampleError):
            discover_samples(self.tmpdir)


if __name__ == '__main__':
    unittest.main()
