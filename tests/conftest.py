"""Shared pytest fixtures."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from materialsearch.orchestration.cancellation import CancellationRegistry
from materialsearch.orchestration.orchestrator import TurnOrchestrator
from materialsearch.sessions.threads import ThreadStore
from materialsearch.tools.corpus_tools import build_corpus_tools
from tests.helpers import FakeRuntime, make_session_store, make_settings, missing_rg_runner, write_corpus


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(os.environ):
        if name.startswith("MATERIALSEARCH_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def corpus_dir(tmp_path: Path) -> Path:
    return write_corpus(
        tmp_path / "corpus",
        {
            "alpha.txt": "Hyaluronic acid improves hydration.\nNiacinamide brightens skin.\n",
            "nested/beta.txt": "Retinol is a vitamin A derivative.\nHyalu ronic acid (OCR split)\n",
            "nested/deeper/gamma.txt": "Ceramide NP supports the barrier.\n",
            "notes.md": "Hyaluronic acid in markdown is ignored.\n",
        },
    )


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def orchestrator_parts(corpus_dir: Path, runtime: FakeRuntime):
    sessions, backends = make_session_store()
    threads = ThreadStore()
    registry = CancellationRegistry()
    orchestrator = TurnOrchestrator(
        make_settings(),
        runtime=runtime,
        sessions=sessions,
        threads=threads,
        cancellations=registry,
        tool_factory=lambda on_call: build_corpus_tools(corpus_dir, on_call=on_call, runner=missing_rg_runner),
    )
    return orchestrator, backends, threads, registry
