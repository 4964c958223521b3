from __future__ import annotations

from contextlib import contextmanager

from sqlalchemy.orm import Session

from app.riskdocs.db import build_engine, build_sessionmaker
from app.riskdocs.modules.documents.write_lock import install_write_lock


@contextmanager
def script_session(db_url: str):
    """
    Session for one-off scripts. Carries the same flush-time write lock as the app,
    so seeding and maintenance can never rewrite an issued document.
    """
    engine = build_engine(db_url)
    sm = build_sessionmaker(engine)
    install_write_lock(sm)
    s: Session = sm()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
        engine.dispose()
