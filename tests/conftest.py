import os

import pytest

from reportsync.core.config import load_config
from reportsync.core.facts import NodeFacts


class FakeInventory:
    """Query collaborator stub; records every query it receives."""

    def __init__(self, answer=None, error=None):
        self.answer = list(answer or [])
        self.error = error
        self.queries = []

    def __call__(self, query):
        self.queries.append(query)
        if self.error:
            raise self.error
        return list(self.answer)


@pytest.fixture()
def make_config(monkeypatch):
    for key in list(os.environ):
        if key.startswith("RSYNC_"):
            monkeypatch.delenv(key, raising=False)

    def _make(**sections):
        overrides = {
            "facts": {"path": "facts.yml"},
            "reporting": {"source_addresses": ["10.0.0.5"]},
        }
        for name, values in sections.items():
            overrides.setdefault(name, {}).update(values)
        return load_config(overrides, files=(), dotenv=False)

    return _make


@pytest.fixture()
def db_facts():
    return NodeFacts(
        fqdn="db01.example.com",
        database={"installed_server_version": "11"},
        platform={"server_version": "2023.8.0"},
    )
