"""File-based storage layer for practice sessions."""

import json
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

from filelock import FileLock

from ..models.schemas import Mistake, Session, SessionReport, SessionStatus, Turn, utc_now

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when session data cannot be read or written."""
    pass


class Storage:
    """
    Stores each session in its own folder:

        <base_dir>/<session_id>/session.json
        <base_dir>/<session_id>/turns/001.json
        <base_dir>/<session_id>/mistakes.json
        <base_dir>/<session_id>/report.json
    """

    def __init__(self, base_dir: str = "sessions"):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _get_session_dir(self, session_id: str) -> Path:
        return self.base_dir / session_id

    def _get_turns_dir(self, session_id: str) -> Path:
        return self._get_session_dir(session_id) / "turns"

    def _atomic_write_json(self, file_path: Path, data: Any) -> None:
        """Write JSON via a temp file in the same directory, then rename."""
        temp_fd, temp_path = tempfile.mkstemp(dir=file_path.parent, prefix=".tmp_", suffix=".json")
        try:
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
            shutil.move(temp_path, file_path)
        except OSError as e:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise StorageError(f"Failed to write {file_path}: {e}")

    def _read_json(self, file_path: Path) -> Any:
        lock_path = file_path.with_suffix(".lock")
        try:
            with FileLock(lock_path, timeout=10):
                with open(file_path, "r", encoding="utf-8") as f:
                    return json.load(f)
        except FileNotFoundError:
            raise StorageError(f"File not found: {file_path}")
        except json.JSONDecodeError as e:
            raise StorageError(f"Invalid JSON in {file_path}: {e}")

    def _write_json(self, file_path: Path, data: Any) -> None:
        lock_path = file_path.with_suffix(".lock")
        with FileLock(lock_path, timeout=10):
            self._atomic_write_json(file_path, data)

    def _require_session(self, session_id: str) -> Path:
        session_dir = self._get_session_dir(session_id)
        if not session_dir.exists():
            raise StorageError(f"Session {session_id} not found")
        return session_dir

    def create_session(self, session: Session) -> None:
        """
        Create the folder structure and the session record.

        Raises:
            StorageError: If the session already exists
        """
        session_dir = self._get_session_dir(session.session_id)
        if session_dir.exists():
            raise StorageError(f"Session {session.session_id} already exists")

        session_dir.mkdir(parents=True)
        self._get_turns_dir(session.session_id).mkdir()
        self._write_json(session_dir / "session.json", session.model_dump(mode="json", exclude={"turns"}))
        self._write_json(session_dir / "mistakes.json", [])
        logger.info(f"Created session {session.session_id} for user {session.user_id}")

    def session_exists(self, session_id: str) -> bool:
        return self._get_session_dir(session_id).exists()

    def save_turn(self, session_id: str, turn: Turn) -> None:
        """Write one turn; turn files are named by their 1-based sequence."""
        self._require_session(session_id)
        turn_file = self._get_turns_dir(session_id) / f"{turn.sequence:03d}.json"
        self._write_json(turn_file, turn.model_dump(mode="json"))

    def save_mistake(self, session_id: str, mistake: Mistake, turn_sequence: Optional[int] = None) -> None:
        """Append one mistake to the session's mistake log."""
        session_dir = self._require_session(session_id)
        mistakes_file = session_dir / "mistakes.json"
        lock_path = mistakes_file.with_suffix(".lock")

        entry = mistake.model_dump(mode="json")
        entry["turn_sequence"] = turn_sequence
        with FileLock(lock_path, timeout=10):
            existing = []
            if mistakes_file.exists():
                with open(mistakes_file, "r", encoding="utf-8") as f:
                    existing = json.load(f)
            existing.append(entry)
            self._atomic_write_json(mistakes_file, existing)

    def complete_session(
        self,
        session_id: str,
        final_scores: Dict[str, int],
        duration_seconds: int,
        report: Optional[SessionReport] = None,
    ) -> None:
        """
        Mark the stored session as ended.

        Args:
            session_id: Session identifier
            final_scores: overall / grammar / fluency scores
            duration_seconds: Session length
            report: Full report to store alongside the record
        """
        session_dir = self._require_session(session_id)
        record_file = session_dir / "session.json"
        record = self._read_json(record_file)
        record.update({
            "status": SessionStatus.ENDED.value,
            "ended_at": utc_now().isoformat(),
            "final_scores": final_scores,
            "duration_seconds": duration_seconds,
        })
        self._write_json(record_file, record)
        if report is not None:
            self._write_json(session_dir / "report.json", report.model_dump(mode="json"))
        logger.info(f"Completed session {session_id}: {final_scores}")

    def load_session_record(self, session_id: str) -> Dict:
        self._require_session(session_id)
        return self._read_json(self._get_session_dir(session_id) / "session.json")

    def load_turns(self, session_id: str) -> List[Turn]:
        turns_dir = self._get_turns_dir(session_id)
        if not turns_dir.exists():
            return []
        return [Turn(**self._read_json(path)) for path in sorted(turns_dir.glob("[0-9]*.json"))]

    def load_mistakes(self, session_id: str) -> List[Dict]:
        self._require_session(session_id)
        mistakes_file = self._get_session_dir(session_id) / "mistakes.json"
        if not mistakes_file.exists():
            return []
        return self._read_json(mistakes_file)

    def load_report(self, session_id: str) -> Optional[SessionReport]:
        report_file = self._get_session_dir(session_id) / "report.json"
        if not report_file.exists():
            return None
        return SessionReport(**self._read_json(report_file))

    def list_sessions(self, user_id: Optional[str] = None) -> List[Dict]:
        """
        List stored sessions, most recently updated first.

        Args:
            user_id: Only include sessions owned by this user
        """
        sessions = []
        if not self.base_dir.exists():
            return sessions

        for session_dir in self.base_dir.iterdir():
            record_file = session_dir / "session.json"
            if not session_dir.is_dir() or not record_file.exists():
                continue
            try:
                record = self._read_json(record_file)
            except StorageError as e:
                logger.warning(f"Skipping unreadable session {session_dir.name}: {e}")
                continue
            if user_id is not None and record.get("user_id") != user_id:
                continue
            sessions.append({
                "session_id": session_dir.name,
                "user_id": record.get("user_id"),
                "topic_id": record.get("topic_id"),
                "status": record.get("status"),
                "started_at": record.get("started_at"),
                "ended_at": record.get("ended_at"),
                "last_updated": record_file.stat().st_mtime,
            })

        sessions.sort(key=lambda x: x["last_updated"], reverse=True)
        return sessions
