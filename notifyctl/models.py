from dataclasses import dataclass, asdict
from typing import Optional

# Job statuses
PENDING = "pending"
SENT = "sent"
ERROR = "error"

STATUSES = (PENDING, SENT, ERROR)


@dataclass
class Job:
    id: int
    recipient: str
    display_name: str
    due_at: str
    status: str = PENDING
    last_error: Optional[str] = None
    sent_at: Optional[str] = None
    batch_id: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_row(cls, row) -> "Job":
        return cls(**{k: row[k] for k in row.keys()})

    def to_dict(self) -> dict:
        return asdict(self)
