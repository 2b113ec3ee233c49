from .sqlite_store import SQLiteEvidenceStore  # noqa: F401
