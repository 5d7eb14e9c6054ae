from collections.abc import Generator

from .session import SessionLocalWorkflow


def get_workflow_db() -> Generator:
    db = SessionLocalWorkflow()
    try:
        yield db
    finally:
        db.close()
