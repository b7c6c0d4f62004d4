"""
Bundle aggregation for multi-stop requests.

Tasks created together as one multi-stop request share a bundle id. Older
rows only carry it as a ``group:<id>`` token inside special_instructions, so
both sources are read. Callers see one synthetic task per bundle, with the id
``group-<bundleId>``; the engine accepts that id for every transition and
applies it to all member rows.
"""
import logging
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional

from taskdelivery.errors import ValidationError
from taskdelivery.services.entities import TaskEntity, parse_task

logger = logging.getLogger(__name__)

BUNDLE_ID_PREFIX = 'group-'
BUNDLE_MARKER = 'group:'
MULTIPLE_LOCATIONS = 'Multiple locations'


def is_bundle_id(task_id: str) -> bool:
    return bool(task_id) and task_id.startswith(BUNDLE_ID_PREFIX)


def bundle_id_from_task_id(task_id: str) -> str:
    """'group-abc' -> 'abc'"""
    return task_id[len(BUNDLE_ID_PREFIX):]


def synthetic_task_id(bundle_id: str) -> str:
    return f'{BUNDLE_ID_PREFIX}{bundle_id}'


def parse_bundle_marker(text: Optional[str]) -> Optional[str]:
    """Extract <id> from a 'group:<id>' token; the id runs to the next whitespace."""
    if not text:
        return None
    index = text.find(BUNDLE_MARKER)
    if index == -1:
        return None
    rest = text[index + len(BUNDLE_MARKER):]
    parts = rest.split(maxsplit=1)
    if not parts or rest[:1].isspace():
        return None
    return parts[0]


def extract_bundle_id(row: Mapping[str, Any]) -> Optional[str]:
    bundle_id = row.get('bundle_id')
    if bundle_id:
        return str(bundle_id)
    return parse_bundle_marker(row.get('special_instructions'))


def _sort_key(task: TaskEntity):
    return task.created_at or datetime.min


def _synthesize(bundle_id: str, members: List[TaskEntity]) -> TaskEntity:
    first = members[0]
    count = len(members)
    return replace(
        first,
        id=synthetic_task_id(bundle_id),
        description=f'bundle ({count}) - multi-stop request',
        location_name=first.location_name if count == 1 else MULTIPLE_LOCATIONS,
        location_purpose=first.location_purpose if count == 1 else MULTIPLE_LOCATIONS,
        bundle_id=bundle_id,
        member_count=count,
        # Per-stop progress belongs to the member rows
        location_completions=[],
        location_notes={},
    )


def aggregate_bundles(rows: Iterable[Mapping[str, Any]]) -> List[TaskEntity]:
    """
    Collapse rows sharing a bundle id into one synthetic task each.

    Singles keep their input order and come first; bundles follow, ordered by
    the creation time of their earliest member (ties keep encounter order).
    Rows that cannot be parsed are skipped with a warning.
    """
    singles: List[TaskEntity] = []
    bundles: Dict[str, List[TaskEntity]] = {}

    for row in rows:
        try:
            task = parse_task(row)
        except ValidationError as e:
            logger.warning(f"Skipping malformed task row {row.get('id')!r}: {e.message}")
            continue

        bundle_id = extract_bundle_id(row)
        if bundle_id is None:
            singles.append(task)
        else:
            bundles.setdefault(bundle_id, []).append(task)

    synthesized = []
    for bundle_id, members in bundles.items():
        members = sorted(members, key=_sort_key)
        synthesized.append(_synthesize(bundle_id, members))
    synthesized.sort(key=_sort_key)

    return singles + synthesized
