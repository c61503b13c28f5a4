"""Actor Value Object

The verified caller identity supplied by the authentication collaborator.
Passed explicitly into every operation; the core never reads session state.
"""

from dataclasses import dataclass
from enum import Enum


class ActorRole(str, Enum):
    """Role claim attached to a verified identity"""

    POSTER = "poster"  # Publishes work items, accepts bids, approves work
    DOER = "doer"  # Bids on and executes work items
    ARBITER = "arbiter"  # Administrative role that resolves disputes


@dataclass(frozen=True)
class Actor:
    """Verified caller identity and role claim"""

    actor_id: str
    role: ActorRole

    def __post_init__(self):
        if not self.actor_id:
            raise ValueError("actor_id cannot be empty")

    @classmethod
    def poster(cls, actor_id: str) -> "Actor":
        return cls(actor_id=actor_id, role=ActorRole.POSTER)

    @classmethod
    def doer(cls, actor_id: str) -> "Actor":
        return cls(actor_id=actor_id, role=ActorRole.DOER)

    @classmethod
    def arbiter(cls, actor_id: str) -> "Actor":
        return cls(actor_id=actor_id, role=ActorRole.ARBITER)

    @property
    def is_arbiter(self) -> bool:
        return self.role == ActorRole.ARBITER
