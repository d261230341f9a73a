"""
File change detection for the recorder.

Reports ``(path, content, timestamp)`` for every created or modified
text file under a root, and ``(path, None, timestamp)`` for deletions.
Paths are relative to the root and use forward slashes.
"""

import logging
import os
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from code_timeline.shared.protocol import now_ms

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[str, Optional[str], int], None]
Change = Tuple[str, Optional[str], int]

IGNORED_DIRS = {"node_modules", ".git", "dist", "build", "coverage"}
IGNORED_SUFFIXES = (".ctm", ".log", ".tmp")

TEXT_EXTENSIONS = {
    ".txt", ".js", ".ts", ".jsx", ".tsx", ".html", ".css", ".json", ".md",
    ".yml", ".yaml", ".xml", ".svg", ".py", ".java", ".c", ".cpp", ".h",
    ".cs", ".php", ".rb", ".go", ".rs", ".sh", ".bat", ".ps1",
}


@dataclass
class FileStat:
    mtime_ns: int
    size: int


class ChangeDetector(ABC):
    """Source of file changes for a recording."""

    @abstractmethod
    def start(self, callback: ChangeCallback):
        """Start reporting changes to callback."""
        pass

    @abstractmethod
    def stop(self):
        """Stop reporting changes."""
        pass


class PollingChangeDetector(ChangeDetector):
    """
    Detects changes by walking the tree every ``poll_interval_s``.

    Files that exist when the detector is primed are the baseline and
    are not reported. Files larger than ``max_file_bytes`` or that do not
    decode as UTF-8 are skipped.
    """

    def __init__(
        self,
        root: str,
        poll_interval_s: float = 0.5,
        max_file_bytes: int = 1_000_000,
        text_extensions=TEXT_EXTENSIONS,
    ):
        self.root = Path(root)
        self.poll_interval_s = poll_interval_s
        self.max_file_bytes = max_file_bytes
        self.text_extensions = set(text_extensions)

        self._known: Dict[str, FileStat] = {}
        self._primed = False
        self._callback: Optional[ChangeCallback] = None
        self._running = False
        self._stop_event = threading.Event()
        self._poll_thread: Optional[threading.Thread] = None

    # ==================== Filtering ====================

    def should_ignore(self, relative_path: str) -> bool:
        parts = relative_path.split("/")
        for part in parts:
            if part.startswith(".") or part in IGNORED_DIRS:
                return True
        return parts[-1].endswith(IGNORED_SUFFIXES)

    def is_text(self, relative_path: str) -> bool:
        ext = os.path.splitext(relative_path)[1].lower()
        return ext == "" or ext in self.text_extensions

    # ==================== Scanning ====================

    def scan(self) -> Dict[str, FileStat]:
        """Stat every eligible file under the root."""
        found = {}
        for dirpath, dirnames, filenames in os.walk(self.root):
            rel_dir = Path(dirpath).relative_to(self.root).as_posix()
            # Prune ignored directories in place so os.walk skips them
            dirnames[:] = [
                d for d in dirnames
                if not self.should_ignore(d if rel_dir == "." else f"{rel_dir}/{d}")
            ]

            for filename in filenames:
                relative_path = filename if rel_dir == "." else f"{rel_dir}/{filename}"
                if self.should_ignore(relative_path) or not self.is_text(relative_path):
                    continue
                try:
                    st = os.stat(os.path.join(dirpath, filename))
                except OSError:
                    continue  # Removed mid-walk
                found[relative_path] = FileStat(mtime_ns=st.st_mtime_ns, size=st.st_size)
        return found

    def read(self, relative_path: str) -> Optional[str]:
        """Content of a file, or None if it is unreadable or not text."""
        try:
            with open(self.root / relative_path, encoding="utf-8") as f:
                return f.read()
        except UnicodeDecodeError:
            logger.debug(f"Skipping non-UTF-8 file {relative_path}")
        except OSError as e:
            logger.debug(f"Could not read {relative_path}: {e}")
        return None

    def prime(self) -> Dict[str, str]:
        """
        Take the baseline.

        Returns:
            Content of every eligible file present now
        """
        contents = {}
        self._known = {}
        for relative_path, stat in self.scan().items():
            if stat.size > self.max_file_bytes:
                continue
            content = self.read(relative_path)
            if content is None:
                continue
            self._known[relative_path] = stat
            contents[relative_path] = content

        self._primed = True
        logger.info(f"Watching {len(self._known)} files under {self.root}")
        return contents

    def poll(self) -> List[Change]:
        """Compare the tree against the last poll and return what changed."""
        if not self._primed:
            self.prime()
            return []

        changes: List[Change] = []
        current = self.scan()

        for relative_path, stat in sorted(current.items()):
            previous = self._known.get(relative_path)
            if previous == stat:
                continue
            if stat.size > self.max_file_bytes:
                logger.debug(f"Skipping {relative_path}: {stat.size} bytes over cap")
                continue

            content = self.read(relative_path)
            if content is None:
                continue
            self._known[relative_path] = stat
            changes.append((relative_path, content, now_ms()))

        for relative_path in sorted(set(self._known) - set(current)):
            del self._known[relative_path]
            changes.append((relative_path, None, now_ms()))

        return changes

    # ==================== Lifecycle ====================

    def start(self, callback: ChangeCallback):
        if self._running:
            return

        self._callback = callback
        if not self._primed:
            self.prime()

        self._running = True
        self._stop_event.clear()
        self._poll_thread = threading.Thread(
            target=self._poll_loop, name="change-detector", daemon=True
        )
        self._poll_thread.start()
        logger.info(f"Polling {self.root} every {self.poll_interval_s}s")

    def stop(self):
        self._running = False
        self._stop_event.set()
        if self._poll_thread:
            self._poll_thread.join(timeout=2.0)
            self._poll_thread = None
        logger.info("Change detector stopped")

    def _poll_loop(self):
        while self._running:
            try:
                changes = self.poll()
            except OSError as e:
                logger.error(f"Error scanning {self.root}: {e}")
                changes = []

            for path, content, timestamp in changes:
                try:
                    self._callback(path, content, timestamp)
                except Exception as e:
                    logger.error(f"Error recording change to {path}: {e}")

            self._stop_event.wait(self.poll_interval_s)
