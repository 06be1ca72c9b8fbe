from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from relay_orchestrator.services.interfaces import SessionClass
from relay_orchestrator.services.notifier import OperatorChannel
from relay_orchestrator.services.pairing import PairingCoordinator
from relay_orchestrator.services.registry import KnowledgeBase, UserRegistry
from relay_orchestrator.services.session_machine import ReconnectPolicy, SessionStateMachine
from relay_orchestrator.tests.fakes import OPERATOR_ID, FakeFrontend, FakeLLM, FakeSleep, FakeTransport
from relay_orchestrator.utils.document_store import DocumentStore


@pytest.fixture
def store(tmp_path: Path) -> DocumentStore:
    return DocumentStore(tmp_path / "data")


@pytest.fixture
def frontend() -> FakeFrontend:
    return FakeFrontend()


@pytest.fixture
def operator(frontend: FakeFrontend) -> OperatorChannel:
    return OperatorChannel(frontend, OPERATOR_ID)


@pytest.fixture
def registry(store: DocumentStore) -> UserRegistry:
    return UserRegistry(store)


@pytest.fixture
def knowledge(store: DocumentStore) -> KnowledgeBase:
    return KnowledgeBase(store)


@pytest.fixture
def pairing(frontend: FakeFrontend, operator: OperatorChannel) -> PairingCoordinator:
    return PairingCoordinator(frontend, operator, renderer=lambda challenge: b"PNG:" + challenge.encode())


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def make_machine(store, registry, pairing, operator, frontend, transport):
    def _make(
        session_id: str = "42",
        *,
        display_name: str = "Ada",
        session_class: SessionClass = SessionClass.USER,
        policy: ReconnectPolicy | None = None,
        sleep: FakeSleep | None = None,
        ingestion: Any = None,
    ) -> SessionStateMachine:
        return SessionStateMachine(
            session_id,
            display_name,
            session_class=session_class,
            transport=transport,
            pairing=pairing,
            registry=registry,
            store=store,
            operator=operator,
            frontend=frontend,
            ingestion=ingestion,
            policy=policy or ReconnectPolicy(delay_seconds=5.0),
            sleep=sleep or FakeSleep(block=True),
        )

    return _make
