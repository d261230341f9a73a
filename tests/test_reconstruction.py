"""
Tests for point-in-time reconstruction.
"""

import pytest

from code_timeline.shared.errors import ReconstructionFailed
from code_timeline.shared.patches import apply_patches, make_patch


def record_history(store, path, history, checkpoint_every=None):
    """Store captures as a checkpoint followed by chained diffs."""
    previous = None
    diffs_since = 0
    for timestamp, content in history:
        if previous is None or (checkpoint_every and diffs_since >= checkpoint_every):
            store.put_checkpoint(path, content, timestamp)
            diffs_since = 0
        else:
            store.put_diff(path, make_patch(previous, content), timestamp)
            diffs_since += 1
        previous = content


class TestContentAt:
    """Tests for ReconstructionEngine.content_at."""

    def test_incremental_scenario(self, checkpoint_store, reconstruction):
        checkpoint_store.put_checkpoint("a.js", "x", 1_000)
        checkpoint_store.put_diff("a.js", make_patch("x", "xy"), 1_500)
        checkpoint_store.put_diff("a.js", make_patch("xy", "xyz"), 2_000)

        assert reconstruction.content_at("a.js", 1_200) == "x"
        assert reconstruction.content_at("a.js", 1_700) == "xy"
        assert reconstruction.content_at("a.js", 2_500) == "xyz"

    def test_nothing_before_first_checkpoint(self, checkpoint_store, reconstruction):
        checkpoint_store.put_checkpoint("a.js", "x", 1_000)

        assert reconstruction.content_at("a.js", 999) is None
        assert reconstruction.content_at("unknown.js", 5_000) is None

    def test_exact_checkpoint_timestamp(self, checkpoint_store, reconstruction, sample_history):
        record_history(checkpoint_store, "main.py", sample_history)

        t0, content = sample_history[0]
        assert reconstruction.content_at("main.py", t0) == content

    def test_every_capture_reproduced(self, checkpoint_store, reconstruction, sample_history):
        record_history(checkpoint_store, "main.py", sample_history)

        for timestamp, content in sample_history:
            assert reconstruction.content_at("main.py", timestamp) == content

    def test_between_captures_uses_last_applied(self, checkpoint_store, reconstruction, sample_history):
        record_history(checkpoint_store, "main.py", sample_history)

        for (timestamp, content), (next_timestamp, _) in zip(sample_history, sample_history[1:]):
            midpoint = (timestamp + next_timestamp) // 2
            assert reconstruction.content_at("main.py", midpoint) == content

    def test_matches_applying_diffs_in_order(self, checkpoint_store, reconstruction, sample_history):
        record_history(checkpoint_store, "main.py", sample_history)

        base = sample_history[0][1]
        patches = [d.patch for d in checkpoint_store.diffs_between("main.py", 0)]
        last_timestamp = sample_history[-1][0]

        assert reconstruction.content_at("main.py", last_timestamp) == apply_patches(base, patches)

    def test_idempotent(self, checkpoint_store, reconstruction, sample_history):
        record_history(checkpoint_store, "main.py", sample_history)

        results = {reconstruction.content_at("main.py", 3_500) for _ in range(5)}
        assert len(results) == 1

    def test_periodic_checkpoints_bound_the_chain(self, checkpoint_store, reconstruction, sample_history):
        record_history(checkpoint_store, "main.py", sample_history, checkpoint_every=2)

        state = reconstruction.file_state_at("main.py", sample_history[-1][0])
        assert state.content == sample_history[-1][1]
        assert state.checkpoint.timestamp == sample_history[3][0]
        assert len(state.diffs) == 1

    def test_paths_are_independent(self, checkpoint_store, reconstruction):
        checkpoint_store.put_checkpoint("a.py", "a", 1_000)
        checkpoint_store.put_checkpoint("b.py", "b", 1_100)
        checkpoint_store.put_diff("a.py", make_patch("a", "aa"), 1_200)
        checkpoint_store.put_diff("b.py", make_patch("b", "bb"), 1_300)

        assert reconstruction.content_at("a.py", 2_000) == "aa"
        assert reconstruction.content_at("b.py", 1_200) == "b"

    def test_same_timestamp_diffs_applied_in_sequence_order(self, checkpoint_store, reconstruction):
        checkpoint_store.put_checkpoint("a.py", "1", 1_000)
        checkpoint_store.put_diff("a.py", make_patch("1", "12"), 1_100)
        checkpoint_store.put_diff("a.py", make_patch("12", "123"), 1_100)

        assert reconstruction.content_at("a.py", 1_100) == "123"


class TestFileState:
    """Tests for reconstruction metadata and failures."""

    def test_file_state_reports_derivation(self, checkpoint_store, reconstruction):
        checkpoint_store.put_checkpoint("a.js", "x", 1_000)
        checkpoint_store.put_diff("a.js", make_patch("x", "xy"), 1_500)

        state = reconstruction.file_state_at("a.js", 1_600)
        data = state.to_dict()

        assert data["content"] == "xy"
        assert data["checkpoint"]["sequence"] == 1
        assert "content" not in data["checkpoint"]
        assert [d["sequence"] for d in data["diffs"]] == [2]

    def test_bad_patch_raises_instead_of_returning_base(self, database, session, checkpoint_store, reconstruction, registry):
        checkpoint_store.put_checkpoint("a.js", "x", 1_000)
        # Patch made against different content than the checkpoint holds
        checkpoint_store.put_diff("a.js", make_patch("something else", "xy"), 1_500)

        assert reconstruction.content_at("a.js", 1_200) == "x"

        with pytest.raises(ReconstructionFailed) as exc_info:
            reconstruction.content_at("a.js", 1_600)

        assert exc_info.value.path == "a.js"
        assert exc_info.value.sequence == 2
        assert registry.get("reconstruction_failures_total").value == 1

    def test_tampered_patch_detected(self, database, session, checkpoint_store, reconstruction):
        checkpoint_store.put_checkpoint("a.js", "abc", 1_000)
        checkpoint_store.put_diff("a.js", make_patch("abc", "abcd"), 1_500)

        with database.snapshot() as conn:
            conn.execute(
                "UPDATE diffs SET patch = ? WHERE session_id = ? AND sequence = 2",
                ('{"format": "ops/1", "ops": [["keep", 99]]}', session.id),
            )
            conn.commit()

        with pytest.raises(ReconstructionFailed):
            reconstruction.content_at("a.js", 2_000)

    def test_reconstruction_time_recorded(self, checkpoint_store, reconstruction, registry):
        checkpoint_store.put_checkpoint("a.js", "x", 1_000)
        reconstruction.content_at("a.js", 1_000)

        assert registry.get("reconstruction_time_ms") is not None
        assert registry.get("reconstruction_diffs_applied").value == 0
