"""
Tests for the text patch format.
"""

import json

import pytest

from code_timeline.shared.patches import (
    PATCH_FORMAT,
    PatchError,
    apply_patch,
    apply_patches,
    get_patcher,
    make_patch,
)


class TestMakePatch:
    """Tests for patch generation."""

    def test_single_character_append(self):
        patch = make_patch("x", "xy")

        assert patch["format"] == PATCH_FORMAT
        assert patch["ops"] == [["keep", 1], ["ins", "y"]]
        assert patch["stats"]["chars_added"] == 1
        assert patch["stats"]["chars_removed"] == 0

    def test_small_edit_in_long_line_stays_small(self):
        old = "a" * 500 + "\n"
        new = "a" * 250 + "b" + "a" * 250 + "\n"

        patch = make_patch(old, new)

        inserted = [op[1] for op in patch["ops"] if op[0] == "ins"]
        assert inserted == ["b"]

    def test_line_stats(self):
        old = "one\ntwo\nthree\n"
        new = "one\nthree\nfour\n"

        stats = get_patcher().stats(make_patch(old, new))

        assert stats["lines_removed"] == 1
        assert stats["lines_added"] == 1

    def test_patch_is_json_serialisable(self):
        patch = make_patch("héllo\n", "héllo wörld\n")
        assert json.loads(json.dumps(patch)) == patch

    def test_identical_texts(self):
        patch = make_patch("same\n", "same\n")
        assert patch["ops"] == [["keep", 5]]


class TestApplyPatch:
    """Tests for patch application."""

    @pytest.mark.parametrize("old,new", [
        ("", "first line\n"),
        ("gone\n", ""),
        ("a\nb\nc\n", "a\nB\nc\nd\n"),
        ("no trailing newline", "no trailing newline\nadded"),
        ("tabs\tand\r\nwindows\r\n", "tabs and\r\nwindows\r\nmore\r\n"),
        ("emoji 🙂\n", "emoji 🙃 changed\n"),
    ])
    def test_apply_reproduces_target(self, old, new):
        assert apply_patch(old, make_patch(old, new)) == new

    def test_apply_patches_in_order(self):
        versions = ["x", "xy", "xyz", "wxyz"]
        patches = [make_patch(a, b) for a, b in zip(versions, versions[1:])]

        assert apply_patches(versions[0], patches) == "wxyz"
        assert apply_patches("x", None) == "x"

    def test_wrong_base_rejected(self):
        patch = make_patch("abc", "abcd")

        with pytest.raises(PatchError):
            apply_patch("xyz", patch)

    def test_ops_must_consume_base(self):
        patch = {"format": PATCH_FORMAT, "ops": [["keep", 2]]}

        with pytest.raises(PatchError):
            apply_patch("abc", patch)

    def test_keep_past_end_rejected(self):
        patch = {"format": PATCH_FORMAT, "ops": [["keep", 10]]}

        with pytest.raises(PatchError):
            apply_patch("abc", patch)

    def test_unknown_format_rejected(self):
        with pytest.raises(PatchError):
            apply_patch("abc", {"format": "unified", "ops": []})

    def test_unknown_op_rejected(self):
        with pytest.raises(PatchError):
            apply_patch("abc", {"format": PATCH_FORMAT, "ops": [["swap", 3]]})

    def test_non_dict_rejected(self):
        with pytest.raises(PatchError):
            apply_patch("abc", "--- a\n+++ b\n")

    def test_patch_error_is_value_error(self):
        assert issubclass(PatchError, ValueError)

    @pytest.mark.parametrize("ops", [[["keep"]], ["ins"], [["ins", "a", "b"]], "keep 3"])
    def test_stats_reject_malformed_ops(self, ops):
        with pytest.raises(PatchError):
            get_patcher().stats({"format": PATCH_FORMAT, "ops": ops})
