from . import db
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import enum

ANONYMOUS_USER = "anonymous"
MAX_QUERY_LENGTH = 1000


def utcnow():
    # Naive UTC everywhere; sqlite drops tzinfo on round trip.
    return datetime.now(timezone.utc).replace(tzinfo=None)


class JobStatus(enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    ANALYZING = "analyzing"
    SEARCHING = "searching"
    DOWNLOADING = "downloading"
    PROCESSING = "processing"
    INDEXING = "indexing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobType(enum.Enum):
    COLLECTION = "collection"
    PROCESSING = "processing"
    INDEXING = "indexing"
    SEARCH = "search"


class JobPriority(enum.IntEnum):
    LOW = 1
    NORMAL = 2
    HIGH = 3
    URGENT = 4


JOB_STATE_TRANSITIONS = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset({JobStatus.ANALYZING, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.ANALYZING: frozenset({JobStatus.SEARCHING, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.SEARCHING: frozenset({JobStatus.DOWNLOADING, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.DOWNLOADING: frozenset({JobStatus.PROCESSING, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.PROCESSING: frozenset({JobStatus.INDEXING, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.INDEXING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}

TERMINAL_STATES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})

# Forward order of the working stages; the only path from RUNNING to COMPLETED.
STAGE_CHAIN = (
    JobStatus.RUNNING,
    JobStatus.ANALYZING,
    JobStatus.SEARCHING,
    JobStatus.DOWNLOADING,
    JobStatus.PROCESSING,
    JobStatus.INDEXING,
    JobStatus.COMPLETED,
)


def is_terminal(status):
    return status in TERMINAL_STATES


def is_valid_transition(from_status, to_status):
    return to_status in JOB_STATE_TRANSITIONS[from_status]


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class Job(db.Model):
    __tablename__ = "jobs"

    id = db.Column(db.String(36), primary_key=True)
    type = db.Column(db.Enum(JobType, values_callable=_enum_values, native_enum=False, length=20), nullable=False, index=True)
    status = db.Column(db.Enum(JobStatus, values_callable=_enum_values, native_enum=False, length=20), nullable=False, default=JobStatus.PENDING, index=True)
    query = db.Column(db.Text, nullable=False)
    progress = db.Column(db.Integer, nullable=False, default=0)
    user_id = db.Column(db.String(255), nullable=False, default=ANONYMOUS_USER, index=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    started_at = db.Column(db.DateTime)
    completed_at = db.Column(db.DateTime)
    error_message = db.Column(db.Text)
    # "metadata" is reserved on declarative models
    meta = db.Column("metadata", db.JSON, nullable=False, default=dict)
    results = db.Column(db.JSON, nullable=False, default=dict)
    version = db.Column(db.Integer, nullable=False, default=1)

    @property
    def is_terminal(self):
        return is_terminal(self.status)

    @property
    def duration_seconds(self):
        if self.started_at is None or self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def to_payload(self):
        """Work queue submission payload."""
        return {
            'id': self.id,
            'type': self.type.value,
            'status': self.status.value,
            'query': self.query,
            'progress': self.progress,
            'userId': self.user_id,
            'metadata': dict(self.meta or {}),
            'createdAt': self.created_at.isoformat() if self.created_at else None,
        }

    def to_dict(self):
        return {
            'id': self.id,
            'type': self.type.value,
            'status': self.status.value,
            'query': self.query,
            'progress': self.progress,
            'userId': self.user_id,
            'metadata': self.meta or {},
            'results': self.results or {},
            'errorMessage': self.error_message,
            'createdAt': self.created_at.isoformat() if self.created_at else None,
            'startedAt': self.started_at.isoformat() if self.started_at else None,
            'completedAt': self.completed_at.isoformat() if self.completed_at else None,
            'version': self.version,
        }

    def __repr__(self):
        return f"<Job {self.id} {self.status.value}>"


@dataclass
class JobData:
    """Runtime view of a job handed to job implementations (decoded queue payload)."""

    id: str
    type: JobType
    query: str
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    user_id: str = ANONYMOUS_USER
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None

    @classmethod
    def from_payload(cls, payload):
        created_at = payload.get('createdAt')
        if isinstance(created_at, str):
            created_at = datetime.fromisoformat(created_at)
        return cls(
            id=payload['id'],
            type=JobType(payload['type']),
            query=payload.get('query') or "",
            status=JobStatus(payload.get('status', JobStatus.PENDING.value)),
            progress=int(payload.get('progress') or 0),
            user_id=payload.get('userId') or ANONYMOUS_USER,
            metadata=dict(payload.get('metadata') or {}),
            created_at=created_at,
        )

    @property
    def options(self):
        options = self.metadata.get('options') or {}
        return options if isinstance(options, dict) else {}

    @property
    def priority(self):
        return parse_priority(self.options.get('priority'))


def parse_priority(value):
    """Accepts JobPriority members, their integer values, or names like "high"."""
    if value is None:
        return JobPriority.NORMAL
    if isinstance(value, str) and not value.isdigit():
        try:
            return JobPriority[value.strip().upper()]
        except KeyError:
            return JobPriority.NORMAL
    try:
        return JobPriority(int(value))
    except (TypeError, ValueError):
        return JobPriority.NORMAL
