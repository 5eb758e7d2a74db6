import os
import sys
from pathlib import Path

import pytest
from loguru import logger

# Ensure we can import modules from src/
SRC = Path(__file__).resolve().parents[1] / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

# Keep interpreter diagnostics out of captured output
logger.remove()


@pytest.fixture()
def sandbox(tmp_path, monkeypatch):
    # Work in an isolated temp directory
    monkeypatch.chdir(tmp_path)
    # Prune environment to a minimal safe set
    safe_env = {
        "PATH": os.environ.get("PATH", "/usr/bin:/bin"),
        "HOME": str(tmp_path),
        "LANG": os.environ.get("LANG", "C"),
        "LC_ALL": os.environ.get("LC_ALL", "C"),
    }
    monkeypatch.setenv("LISH_TEST_SANDBOX", "1")
    return tmp_path, safe_env


@pytest.fixture()
def session(sandbox):
    from ops import ShellSession
    tmp_path, safe_env = sandbox
    sess = ShellSession(inherit_env=False)
    sess.env.update(safe_env)
    return sess
