import json
import os
import signal
import time
from pathlib import Path

import pytest

from transcript_store import TranscriptStore

PROJECT = "demo-project"


def write_transcript(root: Path, project_id: str, session_id: str, entries, age: float = 0.0) -> Path:
    """Write a JSONL transcript and backdate its mtime by ``age`` seconds."""
    path = root / project_id / "conversations" / f"{session_id}.jsonl"
    path.parent.mkdir(parents=True, exist_ok=True)
    lines = [e if isinstance(e, str) else json.dumps(e) for e in entries]
    path.write_text("\n".join(lines) + "\n")
    backdate(path, age)
    return path


def backdate(path: Path, age: float) -> None:
    stamp = time.time() - age
    os.utime(path, (stamp, stamp))


def entry(type_: str, content="hello", **extra) -> dict:
    return {"type": type_, "content": content, **extra}


class RecordingMatcher:
    """Process matcher double that records every signal it is asked to send."""

    def __init__(self, pids=()):
        self.pids = list(pids)
        self.scans = 0
        self.sent: list[tuple[int, signal.Signals]] = []

    def find_processes(self) -> list[int]:
        self.scans += 1
        return list(self.pids)

    def send_signal(self, pid: int, sig: signal.Signals) -> bool:
        self.sent.append((pid, sig))
        return True


@pytest.fixture
def projects_dir(tmp_path) -> Path:
    root = tmp_path / "projects"
    (root / PROJECT / "conversations").mkdir(parents=True)
    return root


@pytest.fixture
def store(projects_dir) -> TranscriptStore:
    return TranscriptStore(projects_dir)


@pytest.fixture
def matcher() -> RecordingMatcher:
    return RecordingMatcher()
