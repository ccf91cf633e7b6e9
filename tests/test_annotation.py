"""
Tests for model annotation from the universal reaction database and for
gzip model I/O.
"""

import gzip
import json
import unittest
import tempfile
import shutil
from pathlib import Path

from genome2gem import annotation
from genome2gem.annotation import UniversalDatabase
from genome2gem.modelio import compress_file, is_gzipped, read_model, write_model

from fake_tools import UNIVERSAL_DB, make_model


class TestReferenceUrls(unittest.TestCase):
    """Test splitting cross-reference URLs into namespace and identifier."""

    def test_namespace_path(self):
        """Test parsing a namespace/identifier URL."""
        self.assertEqual(
            annotation.parse_reference_url("https://identifiers.org/kegg.compound/C00031"),
            ("kegg.compound", "C00031"),
        )

    def test_identifier_with_colon(self):
        """Test an identifier that contains a colon."""
        self.assertEqual(
            annotation.parse_reference_url("http://identifiers.org/biocyc/META:GLC"),
            ("biocyc", "META:GLC"),
        )

    def test_uppercase_prefix_stays_in_identifier(self):
        """Test that an uppercase prefix is kept in the identifier."""
        self.assertEqual(
            annotation.parse_reference_url("https://identifiers.org/CHEBI:17634"),
            ("chebi", "CHEBI:17634"),
        )

    def test_lowercase_prefix(self):
        """Test that a lowercase prefix is stripped."""
        self.assertEqual(
            annotation.parse_reference_url("https://identifiers.org/kegg.reaction:R00299"),
            ("kegg.reaction", "R00299"),
        )

    def test_unparseable(self):
        """Test a URL that cannot be parsed."""
        self.assertIsNone(annotation.parse_reference_url("https://identifiers.org/"))
        self.assertIsNone(annotation.parse_reference_url("https://identifiers.org/nothing"))

    def test_links_grouped_in_source_order(self):
        """Test grouping of annotation links by namespace."""
        parsed = annotation.parse_annotation_links([
            "http://identifiers.org/kegg.compound/C00031",
            "http://identifiers.org/CHEBI:4167",
            "http://identifiers.org/kegg.compound/C00267",
            "http://identifiers.org/kegg.compound/C00031",
            "not a url",
        ])
        self.assertEqual(parsed, {
            "kegg.compound": ["C00031", "C00267"],
            "chebi": ["CHEBI:4167"],
        })

    def test_normalize_formula(self):
        """Test chemical formula normalization."""
        self.assertEqual(annotation.normalize_formula("C6H12O6;C6H12O6X"), "C6H12O6")
        self.assertEqual(annotation.normalize_formula(" H2O "), "H2O")


class TestUniversalDatabase(unittest.TestCase):

    def test_pair_list_annotations(self):
        """Test the pair-list annotation layout."""
        db = UniversalDatabase.from_dict(UNIVERSAL_DB)
        self.assertEqual(set(db.reactions), {"HEX1"})
        self.assertEqual(len(db.reactions["HEX1"].links), 2)
        self.assertEqual(db.metabolites["glc__D"].formula, "C6H12O6;C6H12O6X")

    def test_mapping_annotations_and_list_formula(self):
        """Test the mapping annotation layout."""
        db = UniversalDatabase.from_dict({
            "metabolites": [{
                "bigg_id": "h2o",
                "formula": ["H2O", "HO"],
                "database_links": {
                    "KEGG Compound": [{"link": "http://identifiers.org/kegg.compound/C00001"}],
                },
            }],
        })
        entry = db.metabolites["h2o"]
        self.assertEqual(entry.links, ("http://identifiers.org/kegg.compound/C00001",))
        self.assertEqual(entry.formula, "H2O;HO")

    def test_metabolite_lookup_strips_compartment(self):
        """Test metabolite lookup without the compartment suffix."""
        db = UniversalDatabase.from_dict(UNIVERSAL_DB)
        model = make_model("A")
        self.assertEqual(db.find_metabolite(model.metabolites.get_by_id("glc__D_c")).id, "glc__D")
        self.assertIsNone(db.find_metabolite(model.metabolites.get_by_id("g6p_c")))

    def test_from_json(self):
        """Test loading the universal database from JSON."""
        tmpdir = Path(tempfile.mkdtemp())
        try:
            path = tmpdir / "universal_model.json"
            path.write_text(json.dumps(UNIVERSAL_DB))
            db = UniversalDatabase.from_json(path)
        finally:
            shutil.rmtree(tmpdir)
        self.assertIn("glc__D", db.metabolites)


class TestAnnotateModel(unittest.TestCase):
    """Test in-place annotation of a cobra model."""

    def setUp(self):
        self.db = UniversalDatabase.from_dict(UNIVERSAL_DB)
        self.model = make_model("A")
        self.model.reactions.get_by_id("PGI").annotation = {"ec-code": ["5.3.1.9"]}

    def test_matched_reaction_annotation_replaced(self):
        """Test that a matched reaction gets database annotations."""
        annotation.annotate_model(self.model, self.db)
        self.assertEqual(self.model.reactions.get_by_id("HEX1").annotation, {
            "kegg.reaction": ["R00299"],
            "ec-code": ["2.7.1.1"],
        })

    def test_unmatched_entities_untouched(self):
        """Test that unmatched entities keep their annotations."""
        g6p = self.model.metabolites.get_by_id("g6p_c")
        annotation.annotate_model(self.model, self.db)
        self.assertEqual(self.model.reactions.get_by_id("PGI").annotation, {"ec-code": ["5.3.1.9"]})
        self.assertEqual(g6p.formula, "C6H11O9P")

    def test_metabolite_annotation_and_formula(self):
        """Test metabolite annotation and formula update."""
        annotation.annotate_model(self.model, self.db)
        glc = self.model.metabolites.get_by_id("glc__D_c")
        self.assertEqual(glc.annotation, {"kegg.compound": ["C00031"], "chebi": ["CHEBI:4167"]})
        self.assertEqual(glc.formula, "C6H12O6")

    def test_summary_counts(self):
        """Test the annotation summary counts."""
        summary = annotation.annotate_model(self.model, self.db)
        self.assertEqual(summary.n_reactions, 2)
        self.assertEqual(summary.n_reactions_annotated, 1)
        self.assertEqual(summary.n_metabolites, 2)
        self.assertEqual(summary.n_metabolites_annotated, 1)


class TestModelFiles(unittest.TestCase):
    """Test gzip SBML I/O and file-level annotation."""

    def setUp(self):
        """Set up test fixtures."""
        self.tmpdir = Path(tempfile.mkdtemp())

    def tearDown(self):
        """Clean up test fixtures."""
        shutil.rmtree(self.tmpdir)

    def test_gzip_round_trip(self):
        """Test writing and reading a gzipped SBML model."""
        path = write_model(make_model("A"), self.tmpdir / "A.xml.gz")

        self.assertTrue(is_gzipped(path))
        with gzip.open(path, "rt") as handle:
            self.assertIn("<sbml", handle.read())

        model = read_model(path)
        self.assertEqual(model.id, "A")
        self.assertEqual(sorted(r.id for r in model.reactions), ["HEX1", "PGI"])

    def test_plain_sbml_round_trip(self):
        """Test writing and reading a plain SBML model."""
        path = write_model(make_model("B"), self.tmpdir / "B.xml")
        self.assertFalse(is_gzipped(path))
        self.assertEqual(len(read_model(path).metabolites), 2)

    def test_read_missing_model(self):
        """Test reading a model that does not exist."""
        with self.assertRaises(FileNotFoundError):
            read_model(self.tmpdir / "absent.xml.gz")

    def test_compress_file(self):
        """Test gzip compression of a model file."""
        source = write_model(make_model("B"), self.tmpdir / "B.xml")
        target = compress_file(source, self.tmpdir / "out" / "B.xml.gz")
        self.assertFalse(source.exists())
        self.assertEqual(read_model(target).id, "B")

    def test_annotate_model_file(self):
        """Test annotating a model file on disk."""
        source = write_model(make_model("A"), self.tmpdir / "A.xml.gz")
        output = self.tmpdir / "annotated" / "A.xml.gz"

        summary = annotation.annotate_model_file(source, UniversalDatabase.from_dict(UNIVERSAL_DB), output)

        self.assertEqual(summary.n_metabolites_annotated, 1)
        model = read_model(output)
        glc = model.metabolites.get_by_id("glc__D_c")
        self.assertEqual(glc.formula, "C6H12O6")
        self.assertIn("kegg.compound", glc.annotation)
        # Source model is not modified
        self.assertNotIn("kegg.compound", read_model(source).metabolites.get_by_id("glc__D_c").annotation)


if __name__ == '__main__':
    unittest.main()
