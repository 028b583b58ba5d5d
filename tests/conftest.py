# tests/conftest.py
import os, sys, pathlib

# Pin the environment before anything imports featureflags.core.config
os.environ["STORE_BACKEND"] = "memory"
os.environ["DB_AUTO_CREATE"] = "false"
os.environ.setdefault("LOG_LEVEL", "WARNING")

# Add <repo>/src to sys.path so `import featureflags...` works under pytest
ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

import pytest

from featureflags.kernel.transitions import TransitionEngine
from featureflags.services.memory_store import MemoryStorage


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def engine(storage):
    return TransitionEngine(storage, timeout=5.0)


@pytest.fixture
def make_flag(engine):
    """create (and optionally enable) a flag; returns the Flag"""
    async def _make(name, deps=(), enabled=False, actor="alice"):
        flag = await engine.create_flag(name, [d.id for d in deps], actor)
        if enabled:
            result = await engine.enable_flag(flag.id, actor, "turn on")
            flag = result.flag
        return flag
    return _make
