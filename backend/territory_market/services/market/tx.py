from contextlib import contextmanager


@contextmanager
def atomic(session):
    """Commit on success, roll back (releasing row locks) on any error."""
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
