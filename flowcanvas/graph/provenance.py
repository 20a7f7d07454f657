"""
Provenance Log - audit records of which instruction and inputs produced an image.

Textual provenance (prompt and context) is redacted when the node or its
group is private and the actor is neither the owner nor an admin. The
generated payload itself is never redacted.
"""

import logging
import time
import uuid
from datetime import UTC, datetime

from pydantic import BaseModel, Field

from flowcanvas.graph.models import Actor, Group, Node, Visibility
from flowcanvas.runner.port import Input, PayloadKind

logger = logging.getLogger(__name__)


class ProvenanceRecord(BaseModel):
    """One history entry for a generated output."""

    id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    node_id: str
    node_name: str = ""
    image: str
    prompt: str = ""
    context: str = ""
    owner_id: str | None = None
    is_prompt_secret: bool = False


def _is_hidden_from(visibility: Visibility, owner_id: str | None, actor: Actor) -> bool:
    return visibility == Visibility.PRIVATE and not actor.is_admin and owner_id != actor.id


def is_prompt_secret(node: Node, group: Group | None, actor: Actor) -> bool:
    """True when ``actor`` may not see the node's textual provenance."""
    if _is_hidden_from(node.source_visibility, node.owner_id, actor):
        return True
    return group is not None and _is_hidden_from(group.visibility, group.owner_id, actor)


class ProvenanceLog:
    """
    Builds and keeps provenance records, newest first.

    Persisting records is left to the caller (subscribe to
    ``provenance_recorded`` events or read ``entries()``).
    """

    def __init__(self, max_entries: int | None = None):
        self._entries: list[ProvenanceRecord] = []
        self._max_entries = max_entries

    @staticmethod
    def build(
        node: Node,
        instruction: str,
        inputs: list[Input],
        result_content: str,
        actor: Actor,
        group: Group | None = None,
    ) -> ProvenanceRecord:
        """
        Build a record for one generated output.

        ``context`` joins every non-empty text input in positional order.
        """
        context = "\n\n".join(i.data for i in inputs if i.kind == PayloadKind.TEXT and i.data)
        secret = is_prompt_secret(node, group, actor)

        record = ProvenanceRecord(
            id=f"hist-{int(time.time() * 1000)}-{node.id}-{uuid.uuid4().hex[:6]}",
            node_id=node.id,
            node_name=node.name,
            image=result_content,
            prompt=instruction or "",
            context=context,
            owner_id=actor.id,
            is_prompt_secret=secret,
        )
        if secret:
            record.prompt = ""
            record.context = ""
        return record

    def append(self, record: ProvenanceRecord) -> None:
        self._entries.insert(0, record)
        if self._max_entries is not None and len(self._entries) > self._max_entries:
            del self._entries[self._max_entries :]

    def entries(self, actor: Actor | None = None) -> list[ProvenanceRecord]:
        """Records visible to ``actor`` (all records when no actor is given)."""
        if actor is None or actor.is_admin:
            return list(self._entries)
        return [r for r in self._entries if r.owner_id is None or r.owner_id == actor.id]

    def remove(self, record_ids: list[str]) -> int:
        doomed = set(record_ids)
        before = len(self._entries)
        self._entries = [r for r in self._entries if r.id not in doomed]
        return before - len(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
