import os
import sys

import pytest

# Ensure study_aid is importable in tests (e.g., `import services...`).
STUDY_AID_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "study_aid"))
if STUDY_AID_DIR not in sys.path:
    sys.path.insert(0, STUDY_AID_DIR)


@pytest.fixture
def sqlite_db(tmp_path, monkeypatch):
    """Point the engine at a throwaway SQLite file with the material tables created."""
    from db import sql_db
    from db.schema import ensure_schema

    for key in ("ENVIRONMENT", "DATABASE_URL", "DATABASE_URL_PROD", "DATABASE_URL_STAGING"):
        monkeypatch.delenv(key, raising=False)
    db_path = tmp_path / "study_aid_test.db"
    monkeypatch.setenv("MATERIAL_SQLITE_PATH", str(db_path))
    sql_db.reset_engine()
    ensure_schema()
    yield db_path
    sql_db.reset_engine()


@pytest.fixture
def postgres_db():
    """Use the PostgreSQL server named by DATABASE_URL; skip when there is none."""
    from db import sql_db
    from db.schema import ensure_schema

    url = os.getenv("DATABASE_URL", "")
    if not url.startswith("postgresql"):
        pytest.skip("DATABASE_URL does not point at PostgreSQL")
    sql_db.reset_engine()
    ensure_schema()
    yield url
    sql_db.reset_engine()
