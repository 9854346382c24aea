import pytest

from judgeloop.events import EventBus
from judgeloop.judge import JudgePanel
from judgeloop.pipeline import GenerationOrchestrator
from judgeloop.retrieval import RetrievalIndex
from judgeloop.store import MemoryStore
from judgeloop.synthesizer import PromptSynthesizer

from fakes import FakeEmbedder, FakeImageClient


@pytest.fixture(autouse=True)
def tmp_outputs(tmp_path, monkeypatch):
    monkeypatch.setattr("config.OUTPUTS_DIR", tmp_path / "outputs")
    return tmp_path / "outputs"


@pytest.fixture
def index():
    return RetrievalIndex()


@pytest.fixture
def store(index):
    return MemoryStore(index=index)


@pytest.fixture
def build_orchestrator(store, index):
    """Wire an orchestrator around fakes; returns (orchestrator, image_client)."""

    def build(llm, agents, image_client=None, embedder=None, panel_timeout=5.0, drain_timeout=5.0, **kwargs):
        for agent in agents:
            store.save_agent(agent)
        image_client = image_client or FakeImageClient()
        panel = JudgePanel(
            llm,
            embedder=embedder or FakeEmbedder(),
            index=index,
            timeout=panel_timeout,
            drain_timeout=drain_timeout,
        )
        kwargs.setdefault("sleep", lambda seconds: None)
        orchestrator = GenerationOrchestrator(
            store=store,
            image_client=image_client,
            panel=panel,
            synthesizer=PromptSynthesizer(llm),
            events=EventBus(),
            **kwargs,
        )
        return orchestrator, image_client

    return build
