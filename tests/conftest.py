# tests/conftest.py
"""Shared fixtures for the memory-notation test suite."""

import json

import pytest

from memory_notation.checkers import CheckerRunner
from memory_notation.config import DEFAULT_CONFIG
from memory_notation.loader import decode_records


@pytest.fixture
def unit_of():
    """Decode a list of record dicts into a TranslationUnit."""
    def _unit(records, source="unit.c"):
        return decode_records(records, source=source)
    return _unit


@pytest.fixture
def check(unit_of):
    """Run every default checker over *records*; keyword args override config."""
    def _check(records, **overrides):
        config = DEFAULT_CONFIG.with_overrides(**overrides)
        return CheckerRunner(config=config).run(unit_of(records))
    return _check


@pytest.fixture
def rules():
    """Rule ids of a run's diagnostics, in output order."""
    def _rules(results):
        return [d.rule_id for d in results.diagnostics]
    return _rules


@pytest.fixture
def unit_file(tmp_path):
    """Write records to a JSON file and return its path as a string."""
    def _write(records, name="unit.json"):
        path = tmp_path / name
        path.write_text(json.dumps(records), encoding="utf-8")
        return str(path)
    return _write
