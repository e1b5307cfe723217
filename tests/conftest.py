import os

import pytest

from interpreter import Engine, Script


ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
EXT_DIR = os.path.join(ROOT, "ext")


@pytest.fixture
def engine():
    return Engine(seed=1234)


@pytest.fixture
def run(engine):
    """Run a source string on the shared fixture engine and return its text."""

    def _run(source, environment=None):
        return engine.run(Script(source), environment)

    return _run


@pytest.fixture
def strings_ext():
    return os.path.join(EXT_DIR, "strings.py")
