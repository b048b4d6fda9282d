# tests/conftest.py
"""
Shared fixtures for the memsafety test suite.
"""

import textwrap

import pytest

import memsafety
from memsafety.catalog import OperationCatalog
from memsafety.scopes import ScopeTracker
from memsafety.tokenizer import tokenize


def c_source(text: str) -> bytes:
    """Dedent an inline C snippet and encode it as the analyzer sees it."""
    return textwrap.dedent(text).lstrip("\n").encode("latin-1")


def classify(src, config=None):
    """Run tokenizer → scope tracker → catalog and return (ops, skeleton)."""
    if isinstance(src, str):
        src = src.encode("latin-1")
    tokens = list(tokenize(src).significant())
    skeleton = ScopeTracker().track(tokens, len(src))
    return OperationCatalog(config).classify(tokens, skeleton.scope_of), skeleton


@pytest.fixture(autouse=True)
def _default_config():
    """Every test starts and ends with the default configuration."""
    memsafety.reset_config()
    yield
    memsafety.reset_config()


@pytest.fixture
def leaky_source():
    return c_source("""
        void f(void) {
            char *p = malloc(16);
            p[0] = 'a';
        }
    """)


@pytest.fixture
def literal_scenario():
    return b"p = malloc(10); use(p); free(p); use(p);"
