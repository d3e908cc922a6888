"""Record entity and version-token generation."""

from __future__ import annotations

import dataclasses
import uuid
from dataclasses import dataclass


def new_token() -> str:
    """Return a fresh opaque token, used for both record keys and versions."""
    return str(uuid.uuid4())


@dataclass
class Record:
    """A stored record.

    ``key`` is empty until the record is first saved. ``version`` identifies
    the persisted snapshot the holder last observed and is only ever compared
    for equality.
    """

    title: str = ""
    content: str = ""
    key: str = ""
    version: str = ""

    @property
    def is_new(self) -> bool:
        return not self.key

    def copy(self) -> Record:
        return dataclasses.replace(self)
