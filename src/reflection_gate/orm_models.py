from __future__ import annotations

from pathlib import Path

from peewee import CharField, IntegerField, Model, SqliteDatabase, TextField

PRAGMAS = {
    "journal_mode": "wal",
    "busy_timeout": 5000,
}


class LearningModel(Model):
    id = CharField(primary_key=True)
    schema_version = IntegerField(default=1)
    category = CharField()
    summary = TextField()
    detail = TextField()
    scope = CharField(index=True)
    confidence = CharField(default="medium")
    criteria = TextField(default="[]")
    tags = TextField(default="[]")
    context_files = TextField(default="[]")
    session_id = CharField(default="")
    ticket_id = CharField(null=True)
    # Fixed-width UTC ISO text so created_after filters compare lexically.
    created_at = CharField(index=True)
    status = CharField(index=True, default="active")
    superseded_by = CharField(null=True)

    class Meta:
        table_name = "learnings"


ALL_MODELS: list[type[Model]] = [LearningModel]


def open_learning_database(db_path: str | Path) -> SqliteDatabase:
    """A database for one backend, with tables created on first use."""
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    db = SqliteDatabase(str(path), pragmas=PRAGMAS)
    with db.bind_ctx(ALL_MODELS):
        with db.connection_context():
            db.create_tables(ALL_MODELS, safe=True)
    return db
