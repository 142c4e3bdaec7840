"""Change notifications emitted by the realtime store."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class CollectionChanged(BaseModel):
    """Fired after any write under a watched collection path.

    ``snapshot`` is the full current contents of the collection, keyed by id.
    """

    path: str
    snapshot: dict[str, Any] = Field(default_factory=dict)


class FeedFailed(BaseModel):
    """Fired when the live feed for a path breaks (e.g. transport failure)."""

    path: str
    reason: str
