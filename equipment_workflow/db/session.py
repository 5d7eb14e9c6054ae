import os

from .engine import build_engine, build_session_factory


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


WORKFLOW_DB_URL = _require_env("WORKFLOW_DB_URL")

engine_workflow = build_engine(WORKFLOW_DB_URL)

SessionLocalWorkflow = build_session_factory(engine_workflow)
