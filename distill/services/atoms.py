"""Read-side helpers over the batch/atom/label store."""

from datetime import date, datetime, timezone
from typing import Iterable, List, Optional, Sequence
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from distill.models.batch import MessageAtom, MessageLabel, Role
from distill.models.profile import FilterMode
from distill.services.hashing import normalize_text, sha256


def to_utc_naive(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive input is taken as UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def local_day_date(timestamp_utc: datetime, tz_name: str) -> date:
    """Calendar day of a UTC instant in the given IANA timezone."""
    aware = to_utc_naive(timestamp_utc).replace(tzinfo=timezone.utc)
    return aware.astimezone(ZoneInfo(tz_name)).date()


def canonical_timestamp(timestamp_utc: datetime) -> str:
    """Render as ``YYYY-MM-DDTHH:MM:SS.mmmZ`` from integer fields only."""
    ts = to_utc_naive(timestamp_utc)
    return "%04d-%02d-%02dT%02d:%02d:%02d.%03dZ" % (
        ts.year,
        ts.month,
        ts.day,
        ts.hour,
        ts.minute,
        ts.second,
        ts.microsecond // 1000,
    )


def compute_text_hash(text: str) -> str:
    return sha256(normalize_text(text))


def compute_atom_stable_id(
    source: str,
    timestamp_utc: datetime,
    role: str,
    text: str,
    conversation_id: Optional[str] = None,
    message_id: Optional[str] = None,
) -> str:
    """Deterministic atom identity, stable across re-imports of the same export."""
    parts = [
        "atom_v1",
        source.lower(),
        conversation_id or "",
        message_id or "",
        canonical_timestamp(timestamp_utc),
        role.lower(),
        compute_text_hash(text),
    ]
    return sha256("|".join(parts))


def category_passes(category: str, mode: str, categories: Iterable[str]) -> bool:
    """Apply a filter profile to one label category."""
    allowed = {c.lower() for c in categories}
    if mode.lower() == FilterMode.INCLUDE:
        return category.lower() in allowed
    return category.lower() not in allowed


def eligible_atoms_query(
    db: Session,
    import_batch_ids: Sequence[str],
    sources: Sequence[str],
    label_model: str,
    label_prompt_version_id: str,
    filter_mode: str,
    filter_categories: Sequence[str],
):
    """Query of (MessageAtom, category) rows eligible for summarization input.

    Only user-authored turns are eligible; assistant replies never enter a
    bundle.
    """
    categories = [c.lower() for c in filter_categories]
    if filter_mode.lower() == FilterMode.INCLUDE:
        category_condition = MessageLabel.category.in_(categories)
    else:
        category_condition = MessageLabel.category.notin_(categories)

    return (
        db.query(MessageAtom, MessageLabel.category)
        .join(MessageLabel, MessageLabel.message_atom_id == MessageAtom.id)
        .filter(
            MessageAtom.import_batch_id.in_(list(import_batch_ids)),
            MessageAtom.source.in_([s.lower() for s in sources]),
            MessageAtom.role == Role.USER,
            MessageLabel.model == label_model,
            MessageLabel.prompt_version_id == label_prompt_version_id,
            category_condition,
        )
    )


def find_eligible_days(
    db: Session,
    import_batch_ids: Sequence[str],
    start_date: date,
    end_date: date,
    sources: Sequence[str],
    label_model: str,
    label_prompt_version_id: str,
    filter_mode: str,
    filter_categories: Sequence[str],
) -> List[date]:
    """Distinct days in range with at least one eligible atom, ascending."""
    query = eligible_atoms_query(
        db,
        import_batch_ids,
        sources,
        label_model,
        label_prompt_version_id,
        filter_mode,
        filter_categories,
    ).filter(MessageAtom.day_date >= start_date, MessageAtom.day_date <= end_date)
    days = {atom.day_date for atom, _ in query.all()}
    return sorted(days)
