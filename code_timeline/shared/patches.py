"""
Text patches between consecutive captures of a file.

A patch is a JSON-serialisable dict:

    {
        "format": "ops/1",
        "base_hash": "<sha256 of the text the patch applies to>",
        "ops": [["keep", 10], ["del", 3], ["ins", "new text"]],
        "stats": {"chars_added": 8, "chars_removed": 3, ...},
    }

Ops walk the base text from the start and must consume it exactly.
The timeline store treats patches as opaque; only the patcher reads them.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
import difflib

from .protocol import fingerprint


PATCH_FORMAT = "ops/1"

# Replace blocks larger than this are not refined to character level
CHAR_REFINE_LIMIT = 4000


class PatchError(ValueError):
    """Patch is malformed or does not fit the base text."""


class Patcher(ABC):
    """Produces and applies forward patches between two texts."""

    @abstractmethod
    def make(self, old: str, new: str) -> Any:
        pass

    @abstractmethod
    def apply(self, base: str, patch: Any) -> str:
        pass

    @abstractmethod
    def stats(self, patch: Any) -> Dict[str, int]:
        """Chars/lines added and removed, without applying the patch."""
        pass


class OpsPatcher(Patcher):
    """
    Default patcher built on difflib.

    Lines are matched first, then replaced regions are refined per
    character so small edits stay small.
    """

    def make(self, old: str, new: str) -> Dict[str, Any]:
        old_lines = old.splitlines(keepends=True)
        new_lines = new.splitlines(keepends=True)
        matcher = difflib.SequenceMatcher(None, old_lines, new_lines, autojunk=False)

        ops: List[list] = []
        lines_added = 0
        lines_removed = 0

        for tag, i1, i2, j1, j2 in matcher.get_opcodes():
            old_chunk = "".join(old_lines[i1:i2])
            new_chunk = "".join(new_lines[j1:j2])

            if tag == "equal":
                _push(ops, "keep", len(old_chunk))
                continue

            lines_removed += i2 - i1
            lines_added += j2 - j1

            if tag == "replace" and len(old_chunk) + len(new_chunk) <= CHAR_REFINE_LIMIT:
                self._refine(ops, old_chunk, new_chunk)
            else:
                _push(ops, "del", len(old_chunk))
                _push(ops, "ins", new_chunk)

        chars_added = sum(len(op[1]) for op in ops if op[0] == "ins")
        chars_removed = sum(op[1] for op in ops if op[0] == "del")

        return {
            "format": PATCH_FORMAT,
            "base_hash": fingerprint(old),
            "ops": ops,
            "stats": {
                "chars_added": chars_added,
                "chars_removed": chars_removed,
                "lines_added": lines_added,
                "lines_removed": lines_removed,
            },
        }

    def _refine(self, ops: List[list], old_chunk: str, new_chunk: str):
        matcher = difflib.SequenceMatcher(None, old_chunk, new_chunk, autojunk=False)
        for tag, i1, i2, j1, j2 in matcher.get_opcodes():
            if tag == "equal":
                _push(ops, "keep", i2 - i1)
                continue
            if i2 > i1:
                _push(ops, "del", i2 - i1)
            if j2 > j1:
                _push(ops, "ins", new_chunk[j1:j2])

    def apply(self, base: str, patch: Any) -> str:
        if not isinstance(patch, dict):
            raise PatchError(f"Patch must be an object, got {type(patch).__name__}")

        if patch.get("format") != PATCH_FORMAT:
            raise PatchError(f"Unsupported patch format: {patch.get('format')!r}")

        base_hash = patch.get("base_hash")
        if base_hash is not None and base_hash != fingerprint(base):
            raise PatchError("Base text does not match the patch anchor")

        ops = patch.get("ops")
        if not isinstance(ops, list):
            raise PatchError("Patch has no op list")

        out: List[str] = []
        pos = 0

        for op in ops:
            if not isinstance(op, (list, tuple)) or len(op) != 2:
                raise PatchError(f"Malformed op: {op!r}")
            name, arg = op

            if name == "keep":
                if not isinstance(arg, int) or arg < 0 or pos + arg > len(base):
                    raise PatchError(f"keep {arg!r} runs past end of base at {pos}")
                out.append(base[pos:pos + arg])
                pos += arg
            elif name == "del":
                if not isinstance(arg, int) or arg < 0 or pos + arg > len(base):
                    raise PatchError(f"del {arg!r} runs past end of base at {pos}")
                pos += arg
            elif name == "ins":
                if not isinstance(arg, str):
                    raise PatchError(f"ins expects text, got {type(arg).__name__}")
                out.append(arg)
            else:
                raise PatchError(f"Unknown op: {name!r}")

        if pos != len(base):
            raise PatchError(f"Patch consumed {pos} of {len(base)} base characters")

        return "".join(out)

    def stats(self, patch: Any) -> Dict[str, int]:
        if isinstance(patch, dict) and isinstance(patch.get("stats"), dict):
            stats = patch["stats"]
            return {
                "chars_added": int(stats.get("chars_added", 0)),
                "chars_removed": int(stats.get("chars_removed", 0)),
                "lines_added": int(stats.get("lines_added", 0)),
                "lines_removed": int(stats.get("lines_removed", 0)),
            }

        # No recorded stats: count what the ops alone can tell us
        ops = patch.get("ops", []) if isinstance(patch, dict) else []
        if not isinstance(ops, list):
            raise PatchError("Patch has no op list")
        for op in ops:
            if not isinstance(op, (list, tuple)) or len(op) != 2:
                raise PatchError(f"Malformed op: {op!r}")

        inserted = [op[1] for op in ops if op[0] == "ins" and isinstance(op[1], str)]
        return {
            "chars_added": sum(len(text) for text in inserted),
            "chars_removed": sum(op[1] for op in ops if op[0] == "del" and isinstance(op[1], int)),
            "lines_added": sum(text.count("\n") for text in inserted),
            "lines_removed": 0,
        }


def _push(ops: List[list], name: str, arg):
    """Append an op, merging with the previous op of the same kind."""
    if not arg:
        return
    if ops and ops[-1][0] == name:
        ops[-1][1] += arg
    else:
        ops.append([name, arg])


_default_patcher = OpsPatcher()


def get_patcher() -> Patcher:
    """Get the default patcher."""
    return _default_patcher


def make_patch(old: str, new: str) -> Dict[str, Any]:
    return _default_patcher.make(old, new)


def apply_patch(base: str, patch: Any) -> str:
    return _default_patcher.apply(base, patch)


def apply_patches(base: str, patches: Optional[List[Any]]) -> str:
    """Apply patches in order."""
    content = base
    for patch in patches or []:
        content = _default_patcher.apply(content, patch)
    return content
