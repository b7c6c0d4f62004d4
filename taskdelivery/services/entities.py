"""
Typed views of raw store rows.

The store hands back plain dict rows (one per table or view row). The parse
functions here turn them into entities with their required fields checked,
raising ValidationError instead of silently defaulting.
"""
import math
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from taskdelivery.errors import ValidationError
from taskdelivery.models.task import TaskStatus
from taskdelivery.models.cost_proposal import ProposalStatus


@dataclass
class TaskEntity:
    id: str
    user_id: str
    status: str
    latitude: float
    longitude: float
    created_at: datetime
    description: str = ''
    location_name: str = ''
    location_purpose: Optional[str] = None
    updated_at: Optional[datetime] = None
    scheduled_at: Optional[datetime] = None
    delivery_man_id: Optional[str] = None
    reviewing_delivery_person_id: Optional[str] = None
    image_url: Optional[str] = None
    image_path: Optional[str] = None
    special_instructions: Optional[str] = None
    bundle_id: Optional[str] = None
    price: Optional[float] = None
    proposed_cost: Optional[float] = None
    accepted_cost: Optional[float] = None
    cost_notes: Optional[str] = None
    user_counter_cost: Optional[float] = None
    user_counter_notes: Optional[str] = None
    additional_locations: List[Dict[str, Any]] = field(default_factory=list)
    location_completions: List[int] = field(default_factory=list)
    location_notes: Dict[str, Any] = field(default_factory=dict)
    assigned_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    assignment_type: Optional[str] = None
    assigned_by: Optional[str] = None
    version: int = 1
    member_count: int = 1

    @property
    def is_bundle(self) -> bool:
        return self.id.startswith('group-')

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
        data['is_bundle'] = self.is_bundle
        return data


@dataclass
class CostProposalEntity:
    id: str
    task_id: str
    delivery_person_id: str
    proposed_cost: float
    status: str
    proposed_at: datetime
    cost_notes: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['proposed_at'] = self.proposed_at.isoformat()
        return data


@dataclass
class DeliveryPersonnelEntity:
    user_id: str
    is_available: bool
    is_online: bool
    rating: float = 0.0
    total_deliveries: int = 0

    @property
    def can_take_work(self) -> bool:
        return self.is_available and self.is_online

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['can_take_work'] = self.can_take_work
        return data


def _required(row: Mapping[str, Any], key: str, entity: str) -> Any:
    value = row.get(key)
    if value is None or value == '':
        raise ValidationError(f'{entity} row is missing required field "{key}"', field=key)
    return value


def _as_datetime(value: Any, key: str) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        raise ValidationError(f'Field "{key}" is not a valid timestamp: {value!r}', field=key)


def _as_float(value: Any, key: str) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError(f'Field "{key}" must be a number', field=key)
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f'Field "{key}" must be a number: {value!r}', field=key)
    if math.isnan(number) or math.isinf(number):
        raise ValidationError(f'Field "{key}" must be a finite number', field=key)
    return number


def parse_task(row: Mapping[str, Any]) -> TaskEntity:
    """Build a TaskEntity from a tasks table or view row."""
    status = _required(row, 'status', 'Task')
    if status not in TaskStatus.ALL:
        raise ValidationError(f'Unknown task status "{status}"', field='status')

    completions = row.get('location_completions') or []
    try:
        completions = [int(index) for index in completions]
    except (TypeError, ValueError):
        raise ValidationError('location_completions must be a list of integers', field='location_completions')

    return TaskEntity(
        id=str(_required(row, 'id', 'Task')),
        user_id=str(_required(row, 'user_id', 'Task')),
        status=status,
        latitude=_as_float(_required(row, 'latitude', 'Task'), 'latitude'),
        longitude=_as_float(_required(row, 'longitude', 'Task'), 'longitude'),
        created_at=_as_datetime(_required(row, 'created_at', 'Task'), 'created_at'),
        description=row.get('description') or '',
        location_name=row.get('location_name') or '',
        location_purpose=row.get('location_purpose'),
        updated_at=_as_datetime(row.get('updated_at'), 'updated_at'),
        scheduled_at=_as_datetime(row.get('scheduled_at'), 'scheduled_at'),
        delivery_man_id=row.get('delivery_man_id'),
        reviewing_delivery_person_id=row.get('reviewing_delivery_person_id'),
        image_url=row.get('image_url'),
        image_path=row.get('image_path'),
        special_instructions=row.get('special_instructions'),
        bundle_id=row.get('bundle_id'),
        price=_as_float(row.get('price'), 'price'),
        proposed_cost=_as_float(row.get('proposed_cost'), 'proposed_cost'),
        accepted_cost=_as_float(row.get('accepted_cost'), 'accepted_cost'),
        cost_notes=row.get('cost_notes'),
        user_counter_cost=_as_float(row.get('user_counter_cost'), 'user_counter_cost'),
        user_counter_notes=row.get('user_counter_notes'),
        additional_locations=list(row.get('additional_locations') or []),
        location_completions=completions,
        location_notes=dict(row.get('location_notes') or {}),
        assigned_at=_as_datetime(row.get('assigned_at'), 'assigned_at'),
        completed_at=_as_datetime(row.get('completed_at'), 'completed_at'),
        assignment_type=row.get('assignment_type'),
        assigned_by=row.get('assigned_by'),
        version=int(row.get('version') or 1),
    )


def parse_cost_proposal(row: Mapping[str, Any]) -> CostProposalEntity:
    status = _required(row, 'status', 'Cost proposal')
    if status not in ProposalStatus.ALL:
        raise ValidationError(f'Unknown proposal status "{status}"', field='status')
    cost = _as_float(_required(row, 'proposed_cost', 'Cost proposal'), 'proposed_cost')
    if cost <= 0:
        raise ValidationError('proposed_cost must be greater than 0', field='proposed_cost')

    return CostProposalEntity(
        id=str(_required(row, 'id', 'Cost proposal')),
        task_id=str(_required(row, 'task_id', 'Cost proposal')),
        delivery_person_id=str(_required(row, 'delivery_person_id', 'Cost proposal')),
        proposed_cost=cost,
        status=status,
        proposed_at=_as_datetime(_required(row, 'proposed_at', 'Cost proposal'), 'proposed_at'),
        cost_notes=row.get('cost_notes'),
    )


def parse_delivery_personnel(row: Mapping[str, Any]) -> DeliveryPersonnelEntity:
    for key in ('is_available', 'is_online'):
        if row.get(key) is None:
            raise ValidationError(f'Delivery personnel row is missing required field "{key}"', field=key)

    return DeliveryPersonnelEntity(
        user_id=str(_required(row, 'user_id', 'Delivery personnel')),
        is_available=bool(row['is_available']),
        is_online=bool(row['is_online']),
        rating=_as_float(row.get('rating'), 'rating') or 0.0,
        total_deliveries=int(row.get('total_deliveries') or 0),
    )
