"""Persistence for agents, documents and generation requests."""

import json
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Optional

import config

from .errors import PersistenceConflictError, ValidationError
from .retrieval import RetrievalIndex
from .schemas import (
    Agent,
    AgentDocument,
    GenerationRequest,
    IterationSnapshot,
)

logger = logging.getLogger(__name__)


class MemoryStore:
    """In-process store treating each request as a versioned record.

    Updates name the fields they change, so concurrent edits to unrelated
    fields (an admin editing ``description`` mid-run) are never overwritten.
    Records are copied on the way in and out.
    """

    def __init__(self, index: Optional[RetrievalIndex] = None):
        """Initialize an empty store.

        Args:
            index: Retrieval index kept in sync with saved and deleted documents.
        """
        self.index = index
        self._agents: dict[str, Agent] = {}
        self._documents: dict[str, AgentDocument] = {}
        self._requests: dict[str, GenerationRequest] = {}
        self._lock = threading.RLock()

    # Agents

    def save_agent(self, agent: Agent) -> Agent:
        """Insert or replace an agent."""
        with self._lock:
            self._agents[agent.id] = agent.model_copy(deep=True)
        return agent

    def get_agent(self, agent_id: str) -> Optional[Agent]:
        """A copy of the agent, or None if the id is unknown."""
        with self._lock:
            agent = self._agents.get(agent_id)
            return agent.model_copy(deep=True) if agent else None

    def get_agents(self, agent_ids: Iterable[str]) -> list[Agent]:
        """Load agents in the given order; raises if any id is unknown."""
        agents = []
        missing = []
        for agent_id in agent_ids:
            agent = self.get_agent(agent_id)
            if agent is None:
                missing.append(agent_id)
            else:
                agents.append(agent)
        if missing:
            raise ValidationError(f"Unknown agent ids: {', '.join(missing)}")
        return agents

    def list_agents(self) -> list[Agent]:
        """All agents in insertion order."""
        with self._lock:
            return [agent.model_copy(deep=True) for agent in self._agents.values()]

    def delete_agent(self, agent_id: str) -> None:
        """Delete an agent unless a non-terminal request still references it."""
        with self._lock:
            for request in self._requests.values():
                if not request.is_terminal and agent_id in request.judge_ids:
                    raise PersistenceConflictError(
                        f"Agent {agent_id} is referenced by active request {request.id}"
                    )
            self._agents.pop(agent_id, None)
            doc_ids = [doc.id for doc in self._documents.values() if doc.agent_id == agent_id]
            for doc_id in doc_ids:
                self.delete_document(doc_id)

    # Documents

    def save_document(self, document: AgentDocument) -> AgentDocument:
        """Store a document (replacing an earlier version) and index its chunks."""
        with self._lock:
            if document.agent_id not in self._agents:
                raise ValidationError(f"Unknown agent id: {document.agent_id}")
            previous = self._documents.get(document.id)
            if previous is not None and document.version <= previous.version:
                document = document.model_copy(update={"version": previous.version + 1})
            self._documents[document.id] = document.model_copy(deep=True)
        if self.index is not None:
            self.index.add_document(document)
        return document

    def get_documents(self, agent_id: str) -> list[AgentDocument]:
        """Reference documents attached to ``agent_id``."""
        with self._lock:
            return [
                doc.model_copy(deep=True)
                for doc in self._documents.values()
                if doc.agent_id == agent_id
            ]

    def delete_document(self, document_id: str) -> None:
        """Drop a document and its indexed chunks. Unknown ids are ignored."""
        with self._lock:
            document = self._documents.pop(document_id, None)
        if document is not None and self.index is not None:
            self.index.remove_document(document.agent_id, document.id)

    # Requests

    def create_request(self, request: GenerationRequest) -> GenerationRequest:
        """Store a new request at version 1.

        Raises:
            PersistenceConflictError: a request with the same id exists.
        """
        with self._lock:
            if request.id in self._requests:
                raise PersistenceConflictError(f"Request {request.id} already exists")
            stored = request.model_copy(deep=True, update={"version": 1})
            self._requests[request.id] = stored
            return stored.model_copy(deep=True)

    def get_request(self, request_id: str) -> GenerationRequest:
        """A copy of the request.

        Raises:
            KeyError: the request does not exist.
        """
        with self._lock:
            request = self._requests.get(request_id)
            if request is None:
                raise KeyError(f"Request {request_id} not found")
            return request.model_copy(deep=True)

    def list_requests(self) -> list[GenerationRequest]:
        """All requests in creation order."""
        with self._lock:
            return [request.model_copy(deep=True) for request in self._requests.values()]

    def update_request(
        self,
        request_id: str,
        changes: dict[str, Any],
        expected_version: Optional[int] = None,
        allow_terminal: bool = False,
    ) -> GenerationRequest:
        """Apply ``changes`` to the named fields only and bump the version.

        Raises:
            PersistenceConflictError: the record is terminal (unless
                ``allow_terminal``) or its version differs from ``expected_version``.
        """
        with self._lock:
            current = self._requests.get(request_id)
            if current is None:
                raise KeyError(f"Request {request_id} not found")
            if current.is_terminal and not allow_terminal:
                raise PersistenceConflictError(
                    f"Request {request_id} is {current.status.value}; refusing write to "
                    f"{', '.join(sorted(changes))}"
                )
            if expected_version is not None and current.version != expected_version:
                raise PersistenceConflictError(
                    f"Request {request_id} is at version {current.version}, expected {expected_version}"
                )
            unknown = set(changes) - set(GenerationRequest.model_fields)
            if unknown:
                raise ValueError(f"Unknown request fields: {', '.join(sorted(unknown))}")
            updated = current.model_copy(
                deep=True,
                update={**changes, "version": current.version + 1},
            )
            self._requests[request_id] = updated
            return updated.model_copy(deep=True)

    def append_iteration(
        self,
        request_id: str,
        snapshot: IterationSnapshot,
        extra: Optional[dict[str, Any]] = None,
    ) -> GenerationRequest:
        """Append an iteration and advance ``current_iteration`` in one write."""
        with self._lock:
            current = self.get_request(request_id)
            expected = current.current_iteration + 1
            if snapshot.iteration_number != expected:
                raise PersistenceConflictError(
                    f"Iteration {snapshot.iteration_number} out of order, expected {expected}"
                )
            iterations = list(current.iterations) + [snapshot]
            return self.update_request(
                request_id,
                {**(extra or {}), "iterations": iterations, "current_iteration": len(iterations)},
            )


class JsonRunArchive:
    """Writes iteration metadata and a final summary as JSON under a run directory."""

    def __init__(self, output_dir: Path | None = None):
        """Archive runs under ``output_dir`` (``config.OUTPUTS_DIR`` by default)."""
        self.output_dir = Path(output_dir or config.OUTPUTS_DIR)

    def run_dir(self, request_id: str) -> Path:
        """The request's run directory, created on first use."""
        path = self.output_dir / f"run_{request_id}"
        path.mkdir(parents=True, exist_ok=True)
        return path

    def save_iteration(self, request_id: str, snapshot: IterationSnapshot) -> Path:
        """Write one iteration's snapshot as ``iteration_NN.json``."""
        metadata_path = self.run_dir(request_id) / f"iteration_{snapshot.iteration_number:02d}.json"
        with open(metadata_path, "w") as f:
            json.dump(snapshot.model_dump(mode="json"), f, indent=2, default=str)
        return metadata_path

    def save_summary(self, request: GenerationRequest, cost_summary: dict) -> Path:
        """Write ``summary.json`` for a finished request.

        Args:
            request: The terminal request record.
            cost_summary: Usage and estimated cost from ``CostAccumulator.summary``.

        Returns:
            Path of the written file.
        """
        best = request.best_iteration()
        summary = {
            "request_id": request.id,
            "status": request.status.value,
            "completion_reason": request.completion_reason.value if request.completion_reason else None,
            "total_iterations": request.current_iteration,
            "final_image_id": request.final_image_id,
            "best_aggregate_score": best.aggregate_score if best else None,
            "best_iteration": best.iteration_number if best else None,
            "brief": request.brief,
            "final_prompt": request.iterations[-1].prompt_used if request.iterations else None,
            "error_message": request.error_message,
            "costs": cost_summary,
            "written_at": datetime.now().isoformat(timespec="seconds"),
        }
        path = self.run_dir(request.id) / "summary.json"
        with open(path, "w") as f:
            json.dump(summary, f, indent=2)
        logger.debug(f"[ARCHIVE_SUMMARY] RequestID: {request.id} | Path: {path}")
        return path
