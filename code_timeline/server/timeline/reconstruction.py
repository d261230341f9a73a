"""
Point-in-time reconstruction of file contents.

content_at(path, t) takes the latest checkpoint at or before t and
applies, in sequence order, the diffs recorded after it up to t.
"""

from dataclasses import dataclass, field
from typing import List, Optional
import logging
import time

from code_timeline.shared.errors import ReconstructionFailed
from code_timeline.shared.patches import PatchError, Patcher
from code_timeline.shared.protocol import Checkpoint, Diff
from .checkpoint_store import CheckpointStore

logger = logging.getLogger(__name__)


@dataclass
class FileState:
    """A path's reconstructed content and how it was derived."""
    path: str
    timestamp: int
    content: str
    checkpoint: Checkpoint
    diffs: List[Diff] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "timestamp": self.timestamp,
            "content": self.content,
            "checkpoint": self.checkpoint.to_dict(include_content=False),
            "diffs": [d.to_dict(include_patch=False) for d in self.diffs],
        }


class ReconstructionEngine:
    """
    Rebuilds what a file looked like at any instant of a session.

    Cost is one index seek for the checkpoint plus one step per diff
    since it, so long sessions stay cheap as long as the recorder takes
    checkpoints periodically. Arbitrarily long diff chains are still
    correct, only slower.

    A diff that does not apply raises ReconstructionFailed. The engine
    never falls back to returning the unpatched checkpoint.
    """

    def __init__(self, checkpoint_store: CheckpointStore, patcher: Optional[Patcher] = None):
        self.store = checkpoint_store
        self.patcher = patcher or checkpoint_store.patcher

    def content_at(self, path: str, timestamp: int) -> Optional[str]:
        """
        Content of a path at a timestamp.

        Returns:
            The content, or None if nothing was captured for the path yet
        """
        state = self.file_state_at(path, timestamp)
        return state.content if state else None

    def file_state_at(self, path: str, timestamp: int) -> Optional[FileState]:
        started = time.time()
        timestamp = int(timestamp)

        # One snapshot so a checkpoint written mid-query can't split the chain
        with self.store.db.snapshot():
            checkpoint = self.store.latest_checkpoint_before(path, timestamp)
            if checkpoint is None:
                return None

            next_checkpoint = self.store.next_checkpoint_after(path, checkpoint.sequence)
            diffs = self.store.diffs_between(
                path,
                checkpoint.sequence,
                next_checkpoint.sequence - 1 if next_checkpoint else None,
                max_timestamp=timestamp,
            )

        content = checkpoint.content
        applied: List[Diff] = []

        for diff in diffs:
            if diff.timestamp > timestamp:
                break

            if diff.anchor_sequence != checkpoint.sequence:
                self._fail(
                    path,
                    diff.sequence,
                    f"anchored to checkpoint {diff.anchor_sequence}, expected {checkpoint.sequence}",
                )

            try:
                content = self.patcher.apply(content, diff.patch)
            except PatchError as e:
                self._fail(path, diff.sequence, str(e))

            applied.append(diff)

        if self.store.db.metrics:
            elapsed_ms = (time.time() - started) * 1000
            self.store.db.metrics.update_reconstruction_time(elapsed_ms, len(applied))

        return FileState(
            path=path,
            timestamp=timestamp,
            content=content,
            checkpoint=checkpoint,
            diffs=applied,
        )

    def _fail(self, path: str, sequence: int, reason: str):
        logger.error(f"Reconstruction of {path} failed at diff {sequence}: {reason}")
        if self.store.db.metrics:
            self.store.db.metrics.increment_reconstruction_failures()
        raise ReconstructionFailed(path, sequence, reason)
