"""
Read-only access layer for Claude Code session transcripts.

Transcripts live under a projects root directory:

    <root>/<project_id>/conversations/<session_id>.jsonl

Control markers are written next to them in ``<root>/<project_id>/.control``.
Every identifier is validated before the filesystem is touched.
"""

import json
import logging
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

from pydantic import ValidationError

from models import SessionInfo, TranscriptEntry

logger = logging.getLogger(__name__)

# Default projects root - can be overridden via environment variable
PROJECTS_DIR = Path(
    os.environ.get("CLAUDE_PROJECTS_DIR", Path.home() / ".claude" / "projects")
)

CONVERSATIONS_DIR = "conversations"
CONTROL_DIR = ".control"
TRANSCRIPT_SUFFIX = ".jsonl"

MAX_FILE_SIZE = 100 * 1024 * 1024
MAX_TAIL_BYTES = 8 * 1024 * 1024
_BLOCK_SIZE = 64 * 1024

_IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9._-]+$")


class TranscriptError(Exception):
    """Base class for transcript store errors."""


class InvalidIdentifierError(TranscriptError, ValueError):
    """A project or session identifier is malformed or escapes the root."""


class TranscriptAccessError(TranscriptError):
    """A transcript or project directory could not be read."""


class TranscriptTooLargeError(TranscriptError):
    """A transcript is larger than the configured size ceiling."""


def validate_identifier(value: str, kind: str = "identifier") -> str:
    """Reject empty, dotted or path-like identifiers."""
    if not isinstance(value, str) or not value:
        raise InvalidIdentifierError(f"Invalid {kind}: empty")
    if value in (".", "..") or not _IDENTIFIER_RE.match(value):
        raise InvalidIdentifierError(f"Invalid {kind}: {value!r}")
    return value


def _is_session_file(path: Path) -> bool:
    if not path.name.endswith(TRANSCRIPT_SUFFIX):
        return False
    try:
        validate_identifier(path.name[: -len(TRANSCRIPT_SUFFIX)])
    except InvalidIdentifierError:
        return False
    return True


def parse_entries(lines: Iterable[str]) -> list[TranscriptEntry]:
    """Parse JSONL lines into entries, skipping anything malformed."""
    entries = []
    for line in lines:
        try:
            raw = json.loads(line)
        except (json.JSONDecodeError, TypeError):
            continue
        if not isinstance(raw, dict) or not raw.get("type") or not raw.get("content"):
            continue
        try:
            entries.append(TranscriptEntry.model_validate(raw))
        except ValidationError:
            continue
    return entries


class TranscriptStore:
    """Resolves and reads session transcripts under a projects root."""

    def __init__(
        self,
        projects_dir: Optional[Path] = None,
        max_file_size: int = MAX_FILE_SIZE,
        max_tail_bytes: int = MAX_TAIL_BYTES,
    ):
        self.projects_dir = Path(projects_dir or PROJECTS_DIR).resolve()
        self.max_file_size = max_file_size
        self.max_tail_bytes = max_tail_bytes

    def _contained(self, path: Path) -> Path:
        resolved = path.resolve()
        if resolved != self.projects_dir and self.projects_dir not in resolved.parents:
            raise InvalidIdentifierError("Invalid project path: outside projects directory")
        return resolved

    def project_path(self, project_id: str) -> Path:
        validate_identifier(project_id, "project id")
        return self._contained(self.projects_dir / project_id)

    def session_path(self, project_id: str, session_id: str) -> Path:
        validate_identifier(session_id, "session id")
        path = self.project_path(project_id) / CONVERSATIONS_DIR / f"{session_id}{TRANSCRIPT_SUFFIX}"
        return self._contained(path)

    def control_dir(self, project_id: str) -> Path:
        return self.project_path(project_id) / CONTROL_DIR

    def session_exists(self, project_id: str, session_id: str) -> bool:
        """True if the session transcript exists and is a regular file."""
        try:
            return self.session_path(project_id, session_id).is_file()
        except OSError:
            return False

    def stat(self, project_id: str, session_id: str) -> os.stat_result:
        return self.session_path(project_id, session_id).stat()

    def read_tail(self, path: Path, line_count: int) -> list[str]:
        """Return the last ``line_count`` non-blank lines of a file.

        Reads backwards from the end in blocks and never reads more than
        ``max_tail_bytes``. Files above ``max_file_size`` are skipped.
        """
        if line_count <= 0:
            return []
        try:
            size = path.stat().st_size
            if size > self.max_file_size:
                raise TranscriptTooLargeError(
                    f"{path.name} is {size} bytes (limit {self.max_file_size})"
                )
            with open(path, "rb") as f:
                buffer = b""
                position = size
                while position > 0 and buffer.count(b"\n") <= line_count:
                    if size - position >= self.max_tail_bytes:
                        break
                    read_size = min(_BLOCK_SIZE, position)
                    position -= read_size
                    f.seek(position)
                    buffer = f.read(read_size) + buffer
        except OSError as e:
            raise TranscriptAccessError(f"Cannot read {path}: {e}") from e

        lines = buffer.decode("utf-8", errors="replace").splitlines()
        if position > 0 and lines:
            # First line is probably cut mid-record
            lines = lines[1:]
        return [line for line in lines if line.strip()][-line_count:]

    def read_entries(self, project_id: str, session_id: str, line_count: int) -> list[TranscriptEntry]:
        return parse_entries(self.read_tail(self.session_path(project_id, session_id), line_count))

    def _session_info(self, path: Path) -> SessionInfo:
        session_id = path.name[: -len(TRANSCRIPT_SUFFIX)]
        try:
            stats = path.stat()
            return SessionInfo(
                id=session_id,
                file_name=path.name,
                file_path=str(path),
                file_size=stats.st_size,
                last_modified=datetime.fromtimestamp(stats.st_mtime, tz=timezone.utc),
                is_accessible=path.is_file(),
            )
        except OSError as e:
            logger.warning(f"Failed to stat session file {path.name}: {e}")
            return SessionInfo(
                id=session_id,
                file_name=path.name,
                file_path=str(path),
                file_size=0,
                last_modified=datetime.now(timezone.utc),
                is_accessible=False,
            )

    def list_sessions(self, project_id: str) -> list[SessionInfo]:
        """List session transcripts for a project, most recently modified first."""
        conversations = self.project_path(project_id) / CONVERSATIONS_DIR
        try:
            if not conversations.is_dir():
                return []
            paths = sorted(p for p in conversations.iterdir() if _is_session_file(p))
        except OSError as e:
            raise TranscriptAccessError(f"Cannot list sessions for {project_id}: {e}") from e

        sessions = [self._session_info(p) for p in paths]
        sessions.sort(key=lambda s: s.last_modified, reverse=True)
        return sessions
