# backend/tests/conftest.py
"""
Pytest configuration for webhook delivery backend tests.

- Ensures that the project root (backend/) is added to sys.path
  so that `import app.*` works correctly in tests.
- Clears WEBHOOK_* environment variables so that engine settings
  always start from their defaults.
"""

import os
import sys
from pathlib import Path


def _ensure_project_root_in_sys_path() -> None:
    # This file is located at: backend/tests/conftest.py
    # parents[1] -> backend/
    project_root = Path(__file__).resolve().parents[1]
    project_root_str = str(project_root)

    if project_root_str not in sys.path:
        # Insert at the beginning so it has priority over site-packages, etc.
        sys.path.insert(0, project_root_str)


def _clear_webhook_env_vars() -> None:
    """
    Remove WEBHOOK_* variables inherited from the shell.

    Individual tests set the values they need via monkeypatch.
    """
    for name in list(os.environ):
        if name.startswith("WEBHOOK_"):
            del os.environ[name]


_ensure_project_root_in_sys_path()
_clear_webhook_env_vars()
