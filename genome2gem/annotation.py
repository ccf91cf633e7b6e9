"""
Model Annotation from a Universal Reaction Database

Enriches a draft model's reactions and metabolites with structured
cross-references taken from a universal reference dataset (by default the
BiGG universal model).

For every reaction and metabolite of the model that also exists in the
reference dataset:
- the entity's ``annotation`` is replaced by a mapping parsed from the
  dataset's cross-reference URLs. Each URL is split into a namespace key and
  an identifier; identifiers sharing a namespace are collected, in source
  order, into a list under that key.
- metabolite formulas are normalized to the first ``;``-separated segment of
  the reference formula.

Entities absent from the dataset are left exactly as they were.

URL Parsing:
    https://identifiers.org/kegg.compound/C00031  -> ("kegg.compound", "C00031")
    http://identifiers.org/biocyc/META:GLC        -> ("biocyc", "META:GLC")
    https://identifiers.org/CHEBI:17634           -> ("chebi", "CHEBI:17634")
    https://identifiers.org/kegg.reaction:R00299  -> ("kegg.reaction", "R00299")

Reference Dataset Layout:
    A JSON document with ``reactions`` and ``metabolites`` lists. Each record
    has an ``id``, optionally a ``formula`` (metabolites), and its
    cross-references under ``annotation`` or ``database_links``. Both the
    BiGG pair-list form (``[["KEGG Compound", "<url>"], ...]``) and mapping
    forms (``{"KEGG Compound": [{"link": "<url>"}]}`` or name -> URL/list of
    URLs) are accepted; any string starting with ``http`` is taken as a link.
"""

from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union
from urllib.parse import urlparse
import json
import logging

import cobra

from .modelio import read_model, write_model

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReferenceEntry:
    """One reaction or metabolite record of the universal database."""
    id: str
    links: Tuple[str, ...] = ()
    formula: Optional[str] = None


@dataclass
class UniversalDatabase:
    """Reference reactions and metabolites keyed by identifier."""
    reactions: Dict[str, ReferenceEntry] = field(default_factory=dict)
    metabolites: Dict[str, ReferenceEntry] = field(default_factory=dict)

    @classmethod
    def from_json(cls, path: Union[str, Path]) -> 'UniversalDatabase':
        """Load the universal database from a JSON file."""
        path = Path(path)
        with open(path, 'r', encoding='utf-8') as fh:
            data = json.load(fh)
        db = cls.from_dict(data)
        logger.info(
            f"Loaded universal database {path.name}: {len(db.reactions)} reactions, "
            f"{len(db.metabolites)} metabolites"
        )
        return db

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'UniversalDatabase':
        return cls(
            reactions=_index_records(data.get('reactions', [])),
            metabolites=_index_records(data.get('metabolites', [])),
        )

    def find_metabolite(self, metabolite: cobra.Metabolite) -> Optional[ReferenceEntry]:
        """Look a metabolite up by id, then by id without its compartment suffix."""
        entry = self.metabolites.get(metabolite.id)
        if entry is None and metabolite.compartment:
            suffix = f"_{metabolite.compartment}"
            if metabolite.id.endswith(suffix):
                entry = self.metabolites.get(metabolite.id[:-len(suffix)])
        return entry


@dataclass(frozen=True)
class AnnotationSummary:
    n_reactions: int
    n_reactions_annotated: int
    n_metabolites: int
    n_metabolites_annotated: int


def _index_records(records: Iterable[Dict[str, Any]]) -> Dict[str, ReferenceEntry]:
    index = {}
    for record in records:
        entity_id = record.get('id') or record.get('bigg_id')
        if not entity_id:
            continue
        links = _collect_links(record.get('annotation')) + _collect_links(record.get('database_links'))
        formula = record.get('formula')
        if isinstance(formula, list):
            formula = ";".join(str(f) for f in formula)
        index[entity_id] = ReferenceEntry(id=entity_id, links=tuple(links), formula=formula or None)
    return index


def _collect_links(value: Any) -> List[str]:
    """Every URL string nested anywhere in ``value``, in document order."""
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.startswith('http') else []
    if isinstance(value, dict):
        links = []
        for key in ('link', 'url'):
            if key in value:
                return _collect_links(value[key])
        for item in value.values():
            links.extend(_collect_links(item))
        return links
    if isinstance(value, (list, tuple)):
        links = []
        for item in value:
            links.extend(_collect_links(item))
        return links
    return []


def parse_reference_url(url: str) -> Optional[Tuple[str, str]]:
    """
    Split a cross-reference URL into (namespace, identifier).

    Returns None for URLs that carry no identifier.

    Examples
    --------
    >>> parse_reference_url("http://identifiers.org/kegg.compound/C00031")
    ('kegg.compound', 'C00031')
    >>> parse_reference_url("https://identifiers.org/CHEBI:17634")
    ('chebi', 'CHEBI:17634')
    """
    path = urlparse(url.strip()).path.strip('/')
    if not path:
        return None

    parts = path.split('/')
    if len(parts) >= 2:
        namespace, identifier = parts[-2], parts[-1]
    elif ':' in parts[0]:
        prefix, local = parts[0].split(':', 1)
        namespace = prefix.lower()
        # Upper-case prefixes (CHEBI, GO) are part of the identifier itself
        identifier = parts[0] if prefix.isupper() else local
    else:
        return None

    if not namespace or not identifier:
        return None
    return namespace, identifier


def parse_annotation_links(urls: Iterable[str]) -> Dict[str, List[str]]:
    """Group the identifiers of ``urls`` by namespace, keeping first-seen order."""
    annotation: Dict[str, List[str]] = OrderedDict()
    for url in urls:
        parsed = parse_reference_url(url)
        if parsed is None:
            logger.debug(f"Skipping unparseable cross-reference: {url}")
            continue
        namespace, identifier = parsed
        values = annotation.setdefault(namespace, [])
        if identifier not in values:
            values.append(identifier)
    return dict(annotation)


def normalize_formula(formula: str) -> str:
    """Keep the first ``;``-separated formula (the whole string when there is none)."""
    return formula.split(';', 1)[0].strip()


def annotate_model(model: cobra.Model, db: UniversalDatabase) -> AnnotationSummary:
    """
    Annotate ``model`` in place from ``db``.

    Only the reactions and metabolites found in the reference dataset are
    touched; all others keep their existing annotation and formula.
    """
    matched_reactions = [
        (reaction, db.reactions[reaction.id])
        for reaction in model.reactions
        if reaction.id in db.reactions
    ]
    matched_metabolites = [
        (metabolite, entry)
        for metabolite, entry in ((m, db.find_metabolite(m)) for m in model.metabolites)
        if entry is not None
    ]

    for reaction, entry in matched_reactions:
        reaction.annotation = parse_annotation_links(entry.links)

    for metabolite, entry in matched_metabolites:
        metabolite.annotation = parse_annotation_links(entry.links)
        if entry.formula:
            metabolite.formula = normalize_formula(entry.formula)

    summary = AnnotationSummary(
        n_reactions=len(model.reactions),
        n_reactions_annotated=len(matched_reactions),
        n_metabolites=len(model.metabolites),
        n_metabolites_annotated=len(matched_metabolites),
    )
    logger.info(
        f"Annotated {model.id}: {summary.n_reactions_annotated}/{summary.n_reactions} reactions, "
        f"{summary.n_metabolites_annotated}/{summary.n_metabolites} metabolites"
    )
    return summary


def annotate_model_file(
    model_path: Union[str, Path],
    db: UniversalDatabase,
    output_path: Union[str, Path],
) -> AnnotationSummary:
    """Read a model, annotate it, and write it to ``output_path``."""
    model = read_model(model_path)
    summary = annotate_model(model, db)
    write_model(model, output_path)
    return summary
