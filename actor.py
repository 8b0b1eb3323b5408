"""Caller identity passed explicitly into the workflow and payment services"""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Actor:
    user_id: Optional[int]
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == 'admin'


# Gateway callbacks and scheduled jobs act without a user
SYSTEM = Actor(user_id=None, role='system')
