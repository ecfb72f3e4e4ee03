"""Architecture test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest
from pytestarch import EvaluableArchitecture, LayeredArchitecture, get_evaluable_architecture

# tests/architecture/conftest.py -> tests/ -> repository root
_TESTS_DIR = Path(__file__).resolve().parent.parent
_PROJECT_ROOT = _TESTS_DIR.parent
_PACKAGE_DIR = _PROJECT_ROOT / "src" / "milestone_escrow_service"


@pytest.fixture(scope="session")
def evaluable() -> EvaluableArchitecture:
    """Build the evaluable import graph for milestone_escrow_service."""
    return get_evaluable_architecture(str(_PACKAGE_DIR), str(_PACKAGE_DIR))


@pytest.fixture(scope="session")
def layered_arch() -> LayeredArchitecture:
    """
    Layers (top to bottom):
        routers   - HTTP endpoint handlers (thin wrappers)
        services  - Workflow, state machine, voting, release gate, store
        clients   - HTTP adapters for identity, ledger and notifier
    """
    return (
        LayeredArchitecture()
        .layer("routers")
        .containing_modules(["milestone_escrow_service.routers"])
        .layer("services")
        .containing_modules(["milestone_escrow_service.services"])
        .layer("clients")
        .containing_modules(["milestone_escrow_service.clients"])
    )
