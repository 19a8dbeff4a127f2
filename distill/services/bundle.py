"""Deterministic per-day bundle construction.

A bundle is rebuilt from the store on every tick and every preview; the two
hashes it carries are the only thing compared against stored outputs.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import List, Sequence

from sqlalchemy.orm import Session

from distill.models.batch import MessageAtom
from distill.schemas.run import FilterProfileSnapshot, LabelSpec
from distill.services.atoms import canonical_timestamp, eligible_atoms_query
from distill.services.hashing import canonical_json, normalize_text, sha256

logger = logging.getLogger(__name__)

ATOM_SEPARATOR = "\n\n"


@dataclass
class BundleAtom:
    id: str
    atom_stable_id: str
    source: str
    timestamp_utc: datetime
    text: str
    batch_index: int


@dataclass
class Bundle:
    day_date: date
    text: str
    content_hash: str
    context_hash: str
    atoms: List[BundleAtom] = field(default_factory=list)

    @property
    def atom_count(self) -> int:
        return len(self.atoms)

    @property
    def atom_ids(self) -> List[str]:
        return [a.id for a in self.atoms]


@dataclass
class Segment:
    index: int
    segment_id: str
    text: str
    atom_ids: List[str]


def estimate_tokens(text: str) -> int:
    """Rough token count, about four characters per token."""
    return math.ceil(len(text) / 4)


def render_atom(atom: BundleAtom) -> str:
    return f"[{canonical_timestamp(atom.timestamp_utc)}] {atom.source}: {normalize_text(atom.text)}"


def render_atoms(atoms: Sequence[BundleAtom]) -> str:
    return ATOM_SEPARATOR.join(render_atom(a) for a in atoms)


def compute_content_hash(text: str) -> str:
    return sha256("bundle_v1|" + text)


def compute_context_hash(
    content_hash: str,
    model: str,
    summarize_prompt_version_id: str,
    label_spec: LabelSpec,
    filter_profile: FilterProfileSnapshot,
    timezone: str,
    day_date: date,
    sources: Sequence[str],
    import_batch_ids: Sequence[str],
) -> str:
    """Digest of the content hash plus everything that shaped the output.

    ``import_batch_ids`` must already be in canonical run order.
    """
    profile = {
        "name": filter_profile.name,
        "mode": filter_profile.mode.lower(),
        "categories": sorted(c.lower() for c in filter_profile.categories),
    }
    parts = [
        "bundle_ctx_v1",
        content_hash,
        model,
        summarize_prompt_version_id,
        canonical_json(label_spec.model_dump()),
        canonical_json(profile),
        timezone,
        day_date.isoformat(),
        ",".join(sorted(s.lower() for s in sources)),
        ",".join(import_batch_ids),
    ]
    return sha256("|".join(parts))


def load_bundle_atoms(
    db: Session,
    day_date: date,
    import_batch_ids: Sequence[str],
    sources: Sequence[str],
    label_spec: LabelSpec,
    filter_profile: FilterProfileSnapshot,
) -> List[BundleAtom]:
    """Eligible atoms for one day in total bundle order.

    Order is timestamp, then the batch's position in the run, then stable id.
    """
    batch_index = {batch_id: i for i, batch_id in enumerate(import_batch_ids)}
    rows = (
        eligible_atoms_query(
            db,
            import_batch_ids,
            sources,
            label_spec.model,
            label_spec.prompt_version_id,
            filter_profile.mode,
            filter_profile.categories,
        )
        .filter(MessageAtom.day_date == day_date)
        .all()
    )

    atoms = [
        BundleAtom(
            id=atom.id,
            atom_stable_id=atom.atom_stable_id,
            source=atom.source.lower(),
            timestamp_utc=atom.timestamp_utc,
            text=atom.text,
            batch_index=batch_index[atom.import_batch_id],
        )
        for atom, _category in rows
    ]
    atoms.sort(key=lambda a: (a.timestamp_utc, a.batch_index, a.atom_stable_id))
    return atoms


def build_bundle(
    db: Session,
    day_date: date,
    import_batch_ids: Sequence[str],
    sources: Sequence[str],
    label_spec: LabelSpec,
    filter_profile: FilterProfileSnapshot,
    model: str,
    summarize_prompt_version_id: str,
    timezone: str,
) -> Bundle:
    """Build the bundle for ``day_date``. Zero eligible atoms gives an empty bundle."""
    atoms = load_bundle_atoms(db, day_date, import_batch_ids, sources, label_spec, filter_profile)
    text = render_atoms(atoms)
    content_hash = compute_content_hash(text)
    context_hash = compute_context_hash(
        content_hash,
        model,
        summarize_prompt_version_id,
        label_spec,
        filter_profile,
        timezone,
        day_date,
        sources,
        import_batch_ids,
    )

    logger.debug(f"Built bundle for {day_date}: {len(atoms)} atoms, hash {content_hash[:16]}")

    return Bundle(
        day_date=day_date,
        text=text,
        content_hash=content_hash,
        context_hash=context_hash,
        atoms=atoms,
    )


def segment_bundle(atoms: Sequence[BundleAtom], content_hash: str, max_input_tokens: int) -> List[Segment]:
    """Split ordered atoms into consecutive segments that fit ``max_input_tokens``.

    An atom larger than the budget on its own becomes a single-atom segment.
    """
    groups: List[List[BundleAtom]] = []
    current: List[BundleAtom] = []
    current_tokens = 0

    for atom in atoms:
        atom_tokens = estimate_tokens(render_atom(atom))
        separator_tokens = estimate_tokens(ATOM_SEPARATOR) if current else 0
        if current and current_tokens + separator_tokens + atom_tokens > max_input_tokens:
            groups.append(current)
            current = []
            current_tokens = 0
            separator_tokens = 0
        current.append(atom)
        current_tokens += separator_tokens + atom_tokens

    if current:
        groups.append(current)

    return [
        Segment(
            index=i,
            segment_id=sha256(f"segment_v1|{content_hash}|{i}"),
            text=render_atoms(group),
            atom_ids=[a.id for a in group],
        )
        for i, group in enumerate(groups)
    ]
