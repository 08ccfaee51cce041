"""Persistence for learner progress records with optimistic versioning.

Every record carries a ``version``. A save names the version it was read
at and fails with :class:`StaleProgressError` when another writer saved in
between, so concurrent attempts for the same learner/subject/topic can never
silently overwrite each other. Callers retry the whole read-apply-save cycle.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from threading import Lock
from typing import Dict, List, Optional, Tuple

import db
from engines.mastery import LearnerProgressRecord
from schemas import ProgressDocument

logger = logging.getLogger(__name__)

ProgressKey = Tuple[str, str, str]


class StaleProgressError(Exception):
    """Raised when a progress record changed since it was read."""

    def __init__(self, key: ProgressKey, expected_version: int):
        self.key = key
        self.expected_version = expected_version
        super().__init__(
            f"Progress for {'/'.join(key)} is no longer at version {expected_version}"
        )


def _key(record: LearnerProgressRecord) -> ProgressKey:
    return (record.learner_id, record.subject_id, record.topic_id)


def _copy(record: LearnerProgressRecord, **changes) -> LearnerProgressRecord:
    changes.setdefault("weak_areas", list(record.weak_areas))
    changes.setdefault("strengths", list(record.strengths))
    return replace(record, **changes)


class ProgressStore:
    """Keyed store of :class:`LearnerProgressRecord` values."""

    def get(self, learner_id: str, subject_id: str, topic_id: str) -> Optional[LearnerProgressRecord]:
        raise NotImplementedError

    def save(self, record: LearnerProgressRecord) -> LearnerProgressRecord:
        """Persist ``record`` if it is still at ``record.version``.

        Returns the stored record with its version incremented.
        """
        raise NotImplementedError

    def list_for_learner(self, learner_id: str, subject_id: Optional[str] = None) -> List[LearnerProgressRecord]:
        """Records for one learner ordered by subject then topic."""
        raise NotImplementedError


class InMemoryProgressStore(ProgressStore):
    def __init__(self) -> None:
        self._records: Dict[ProgressKey, LearnerProgressRecord] = {}
        self._lock = Lock()

    def get(self, learner_id: str, subject_id: str, topic_id: str) -> Optional[LearnerProgressRecord]:
        with self._lock:
            record = self._records.get((learner_id, subject_id, topic_id))
        return _copy(record) if record is not None else None

    def save(self, record: LearnerProgressRecord) -> LearnerProgressRecord:
        key = _key(record)
        with self._lock:
            current = self._records.get(key)
            current_version = current.version if current is not None else 0
            if current_version != record.version:
                raise StaleProgressError(key, record.version)
            stored = _copy(record, version=record.version + 1)
            self._records[key] = stored
        return _copy(stored)

    def list_for_learner(self, learner_id: str, subject_id: Optional[str] = None) -> List[LearnerProgressRecord]:
        with self._lock:
            matching = [
                _copy(record)
                for key, record in sorted(self._records.items())
                if key[0] == learner_id and (subject_id is None or key[1] == subject_id)
            ]
        return matching

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class SQLiteProgressStore(ProgressStore):
    """Progress records stored as validated JSON documents in ``db``."""

    def get(self, learner_id: str, subject_id: str, topic_id: str) -> Optional[LearnerProgressRecord]:
        document = db.get_progress(learner_id, subject_id, topic_id)
        if document is None:
            return None
        return ProgressDocument.model_validate(document).to_record()

    def save(self, record: LearnerProgressRecord) -> LearnerProgressRecord:
        key = _key(record)
        stored = replace(record, version=record.version + 1)
        document = ProgressDocument.from_record(stored).model_dump(mode="json")
        if not db.save_progress(*key, document, expected_version=record.version):
            logger.info("Stale progress write for %s at version %d", "/".join(key), record.version)
            raise StaleProgressError(key, record.version)
        return stored

    def list_for_learner(self, learner_id: str, subject_id: Optional[str] = None) -> List[LearnerProgressRecord]:
        return [
            ProgressDocument.model_validate(document).to_record()
            for document in db.list_progress(learner_id, subject_id)
        ]
