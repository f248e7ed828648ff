import pytest

import drillbook.persistence as persistence
from drillbook.actions import StaticActionExecutor
from drillbook.context import RequestContext
from drillbook.definitions import playbook_from_dict
from drillbook.engine import PlaybookEngine
from drillbook.persistence import InMemoryRunRepository


@pytest.fixture(autouse=True)
def _reset_repository(monkeypatch, tmp_path):
    # Keep tests away from any config.yaml or database URL of the host.
    monkeypatch.delenv("DRILLBOOK_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("DRILLBOOK_ORG_ID", raising=False)
    monkeypatch.setenv("DRILLBOOK_CONFIG", str(tmp_path / "missing.yaml"))
    persistence._repository_instance = None
    yield
    persistence._repository_instance = None


@pytest.fixture
def ctx() -> RequestContext:
    return RequestContext(org_id="org-1", actor="alice")


@pytest.fixture
def repo() -> InMemoryRunRepository:
    return InMemoryRunRepository()


@pytest.fixture
def engine(repo) -> PlaybookEngine:
    return PlaybookEngine(repo, StaticActionExecutor())


@pytest.fixture
def make_playbook():
    def _make(*steps, name="drill", org_id="org-1"):
        return playbook_from_dict({"name": name, "steps": list(steps)}, org_id)

    return _make
