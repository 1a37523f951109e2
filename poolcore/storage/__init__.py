from ._schema import SCHEMA_VERSION, SCHEMA_SQL
from .participants import ParticipantRepo
from .workers import WorkerRepo
from .shares import ShareRepo
from .blocks import BlockRepo
from .rewards import RewardRepo
from .payouts import PayoutRepo
from .checkpoints import CheckpointRepo
from .locks import LockRepo
from .manager import StorageManager

__all__ = [
    "SCHEMA_VERSION",
    "SCHEMA_SQL",
    "ParticipantRepo",
    "WorkerRepo",
    "ShareRepo",
    "BlockRepo",
    "RewardRepo",
    "PayoutRepo",
    "CheckpointRepo",
    "LockRepo",
    "StorageManager",
]
