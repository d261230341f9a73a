"""
Code Timeline - a flight recorder for coding sessions

Records an editing session as an ordered log of events and file
checkpoints, then answers "what did this file look like at time T"
and replays the session at any speed:
- Append-only event log with gap-free sequence numbers
- Per-file checkpoints and incremental diffs
- Point-in-time content reconstruction
- Seekable, pausable playback
"""

__version__ = "0.1.0"
