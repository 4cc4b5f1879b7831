from __future__ import annotations

import pytest

from prompt_orchestrator.storage.memory import InMemoryPromptRepository
from support import make_case, make_template


@pytest.fixture
def repository() -> InMemoryPromptRepository:
    repo = InMemoryPromptRepository()
    repo.add_template(make_template())
    for case_id in ("c1", "c2", "c3"):
        repo.add_test_case(make_case(case_id))
    return repo
