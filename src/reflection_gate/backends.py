"""Learning storage adapters behind a narrow interface.

The core writes, searches and updates learnings only through
``LearningBackend``. Backends apply filters; ranking happens in
``scoring``. ``BackendRouter`` picks one destination per learning from its
scope at write time.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional, Protocol

from peewee import PeeweeException

from .errors import BackendUnavailable
from .models import Learning, LearningScope, LearningStatus, SearchFilters, SearchQuery
from .orm_models import ALL_MODELS, LearningModel, open_learning_database

logger = logging.getLogger(__name__)

EPHEMERAL_LOCATION = "ephemeral"


class StatusUpdate(str, Enum):
    NOT_FOUND = "not_found"
    UNCHANGED = "unchanged"
    CHANGED = "changed"


@dataclass
class WriteResult:
    learning_id: str
    backend: str
    location: str


class LearningBackend(Protocol):
    name: str

    def write(self, learning: Learning) -> WriteResult: ...

    def search(self, query: SearchQuery, filters: SearchFilters) -> list[Learning]: ...

    def get(self, learning_id: str) -> Learning | None: ...

    def update_status(
        self, learning_id: str, status: LearningStatus, superseded_by: str | None = None
    ) -> StatusUpdate: ...

    def id_prefix_count(self, prefix: str) -> int: ...

    def ping(self) -> bool: ...


def learning_id_for(now: datetime, sequence: int) -> str:
    return f"cl_{now.strftime('%Y%m%d')}_{sequence:03d}"


def apply_status(learning: Learning, status: LearningStatus, superseded_by: str | None = None) -> bool:
    """Move a learning through its lifecycle; False when it was already there.

    Archiving twice and restoring an active learning are no-ops.
    """
    if status == LearningStatus.ARCHIVED:
        return learning.archive()
    if status == LearningStatus.ACTIVE:
        if learning.status == LearningStatus.ACTIVE:
            return False
        learning.restore()
        return True
    learning.supersede(superseded_by or "")
    return True


def _matches_filters(learning: Learning, filters: SearchFilters) -> bool:
    if filters.status is not None and learning.status != filters.status:
        return False
    if filters.scope is not None and learning.scope != filters.scope:
        return False
    if filters.created_after is not None and learning.created_at <= filters.created_after:
        return False
    return True


def _utc_text(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _model_to_learning(row: LearningModel) -> Learning:
    return Learning(
        id=row.id,
        schema_version=row.schema_version,
        category=row.category,
        summary=row.summary,
        detail=row.detail,
        scope=row.scope,
        confidence=row.confidence,
        criteria=json.loads(row.criteria or "[]"),
        tags=json.loads(row.tags or "[]"),
        context_files=json.loads(row.context_files or "[]"),
        session_id=row.session_id,
        ticket_id=row.ticket_id,
        created_at=datetime.fromisoformat(row.created_at),
        status=row.status,
        superseded_by=row.superseded_by,
    )


def _learning_to_row(learning: Learning) -> dict:
    return {
        "id": learning.id,
        "schema_version": learning.schema_version,
        "category": learning.category.value,
        "summary": learning.summary,
        "detail": learning.detail,
        "scope": learning.scope.value,
        "confidence": learning.confidence.value,
        "criteria": json.dumps([c.value for c in learning.criteria]),
        "tags": json.dumps(learning.tags),
        "context_files": json.dumps(learning.context_files),
        "session_id": learning.session_id,
        "ticket_id": learning.ticket_id,
        "created_at": _utc_text(learning.created_at),
        "status": learning.status.value,
        "superseded_by": learning.superseded_by,
    }


class SqliteLearningBackend:
    """Learnings in one SQLite file via peewee."""

    def __init__(self, db_path: str | Path, name: str = "sqlite"):
        self.db_path = Path(db_path)
        self.name = name
        self._db = None

    def _database(self):
        if self._db is None:
            try:
                self._db = open_learning_database(self.db_path)
            except (PeeweeException, OSError) as exc:
                raise BackendUnavailable(f"{self.name}: {exc}") from exc
        return self._db

    def _run(self, func):
        db = self._database()
        try:
            with db.bind_ctx(ALL_MODELS):
                with db.connection_context():
                    return func()
        except PeeweeException as exc:
            raise BackendUnavailable(f"{self.name}: {exc}") from exc

    def write(self, learning: Learning) -> WriteResult:
        row = _learning_to_row(learning)
        self._run(lambda: LearningModel.insert(**row).on_conflict_replace().execute())
        return WriteResult(learning_id=learning.id, backend=self.name, location=str(self.db_path))

    def search(self, query: SearchQuery, filters: SearchFilters) -> list[Learning]:
        def _select():
            q = LearningModel.select()
            if filters.status is not None:
                q = q.where(LearningModel.status == filters.status.value)
            if filters.scope is not None:
                q = q.where(LearningModel.scope == filters.scope.value)
            if filters.created_after is not None:
                q = q.where(LearningModel.created_at > _utc_text(filters.created_after))
            q = q.order_by(LearningModel.created_at.desc(), LearningModel.id.desc()).limit(filters.max_results)
            return [_model_to_learning(row) for row in q]

        return self._run(_select)

    def get(self, learning_id: str) -> Learning | None:
        def _get():
            row = LearningModel.get_or_none(LearningModel.id == learning_id)
            return _model_to_learning(row) if row is not None else None

        return self._run(_get)

    def update_status(
        self, learning_id: str, status: LearningStatus, superseded_by: str | None = None
    ) -> StatusUpdate:
        learning = self.get(learning_id)
        if learning is None:
            return StatusUpdate.NOT_FOUND
        if not apply_status(learning, status, superseded_by):
            return StatusUpdate.UNCHANGED
        self.write(learning)
        return StatusUpdate.CHANGED

    def id_prefix_count(self, prefix: str) -> int:
        return self._run(lambda: LearningModel.select().where(LearningModel.id.startswith(prefix)).count())

    def ping(self) -> bool:
        try:
            self._run(lambda: LearningModel.select().limit(1).count())
        except BackendUnavailable:
            return False
        return True


class MemoryLearningBackend:
    """Process-local backend with the same behavior, for tests and embedding."""

    def __init__(self, name: str = "memory"):
        self.name = name
        self.learnings: dict[str, Learning] = {}

    def write(self, learning: Learning) -> WriteResult:
        self.learnings[learning.id] = learning.model_copy(deep=True)
        return WriteResult(learning_id=learning.id, backend=self.name, location=self.name)

    def search(self, query: SearchQuery, filters: SearchFilters) -> list[Learning]:
        matches = [l.model_copy(deep=True) for l in self.learnings.values() if _matches_filters(l, filters)]
        matches.sort(key=lambda l: (l.created_at, l.id), reverse=True)
        return matches[: filters.max_results]

    def get(self, learning_id: str) -> Learning | None:
        learning = self.learnings.get(learning_id)
        return learning.model_copy(deep=True) if learning is not None else None

    def update_status(
        self, learning_id: str, status: LearningStatus, superseded_by: str | None = None
    ) -> StatusUpdate:
        learning = self.learnings.get(learning_id)
        if learning is None:
            return StatusUpdate.NOT_FOUND
        if not apply_status(learning, status, superseded_by):
            return StatusUpdate.UNCHANGED
        return StatusUpdate.CHANGED

    def id_prefix_count(self, prefix: str) -> int:
        return sum(1 for learning_id in self.learnings if learning_id.startswith(prefix))

    def ping(self) -> bool:
        return True


class BackendRouter:
    """Routes each learning to exactly one backend, chosen by scope."""

    def __init__(self, project: LearningBackend, personal: Optional[LearningBackend] = None):
        self.project = project
        self.personal = personal

    @property
    def backends(self) -> list[LearningBackend]:
        return [b for b in (self.project, self.personal) if b is not None]

    def destination(self, scope: LearningScope) -> LearningBackend | None:
        if scope == LearningScope.EPHEMERAL:
            return None
        if scope == LearningScope.PERSONAL and self.personal is not None:
            return self.personal
        return self.project

    def next_id(self, now: datetime) -> str:
        """Next cl_YYYYMMDD_NNN identifier, unique across every backend."""
        prefix = learning_id_for(now, 0)[:-3]
        used = 0
        for backend in self.backends:
            try:
                used += backend.id_prefix_count(prefix)
            except BackendUnavailable as exc:
                logger.warning("Backend %s unavailable while allocating id: %s", backend.name, exc)
        sequence = used
        candidate = learning_id_for(now, sequence)
        while self._exists(candidate):
            sequence += 1
            candidate = learning_id_for(now, sequence)
        return candidate

    def _exists(self, learning_id: str) -> bool:
        for backend in self.backends:
            try:
                if backend.get(learning_id) is not None:
                    return True
            except BackendUnavailable:
                continue
        return False

    def write(self, learning: Learning) -> WriteResult:
        backend = self.destination(learning.scope)
        if backend is None:
            return WriteResult(learning_id=learning.id, backend="none", location=EPHEMERAL_LOCATION)
        return backend.write(learning)

    def search_all(self, query: SearchQuery | None = None, filters: SearchFilters | None = None) -> list[Learning]:
        query = query or SearchQuery()
        filters = filters or SearchFilters()
        seen: dict[str, Learning] = {}
        for backend in self.backends:
            try:
                results = backend.search(query, filters)
            except BackendUnavailable as exc:
                logger.warning("Skipping backend %s: %s", backend.name, exc)
                continue
            for learning in results:
                seen.setdefault(learning.id, learning)
        return list(seen.values())

    def get(self, learning_id: str) -> Learning | None:
        for backend in self.backends:
            try:
                learning = backend.get(learning_id)
            except BackendUnavailable as exc:
                logger.warning("Skipping backend %s: %s", backend.name, exc)
                continue
            if learning is not None:
                return learning
        return None

    def update_status(
        self, learning_id: str, status: LearningStatus, superseded_by: str | None = None
    ) -> StatusUpdate:
        """Update whichever backend holds the learning.

        Raises BackendUnavailable when it was not found and a backend failed.
        """
        failures: list[str] = []
        for backend in self.backends:
            try:
                result = backend.update_status(learning_id, status, superseded_by)
            except BackendUnavailable as exc:
                failures.append(str(exc))
                continue
            if result != StatusUpdate.NOT_FOUND:
                return result
        if failures:
            raise BackendUnavailable("; ".join(failures))
        return StatusUpdate.NOT_FOUND

    def health(self) -> dict[str, bool]:
        return {backend.name: backend.ping() for backend in self.backends}
