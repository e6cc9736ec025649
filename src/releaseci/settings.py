from __future__ import annotations
import os
from typing import Dict, Iterable

DATABASE_URL = os.environ.get("RELEASECI_DATABASE_URL", "sqlite:///.releaseci/history.db")
WORKFLOW_PATH = os.environ.get("RELEASECI_WORKFLOW", "bindings_workflow.py")
MAX_WORKERS = int(os.environ["RELEASECI_MAX_WORKERS"]) if os.environ.get("RELEASECI_MAX_WORKERS") else None
ARTIFACT_DIR = os.environ.get("RELEASECI_ARTIFACT_DIR", ".releaseci/artifacts")
MAIN_BRANCH = os.environ.get("RELEASECI_MAIN_BRANCH", "main")


def load_secrets(names: Iterable[str], environ: Dict[str, str] | None = None) -> Dict[str, str]:
    """Secrets are read from the environment by name; absent ones are left out."""
    env = os.environ if environ is None else environ
    return {n: env[n] for n in names if env.get(n)}
