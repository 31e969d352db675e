"""
Pytest configuration and shared test helpers for backend tests.
"""
import os
import sys
from pathlib import Path

# Skip heavy server startup (MongoDB, scheduler) when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")

BACKEND_DIR = Path(__file__).resolve().parent.parent
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import pytest
from cryptography.fernet import Fernet

# Shared TestClient fixture so tests can use in-process requests without a running server.
from fastapi.testclient import TestClient
from server import app


@pytest.fixture
def client():
    """Return a TestClient for the main FastAPI app (server:app). Use for unit-style API tests."""
    return TestClient(app)


@pytest.fixture
def encryption_key(monkeypatch):
    """Fresh Fernet key in ENCRYPTION_KEY for code that seals secrets."""
    key = Fernet.generate_key().decode()
    monkeypatch.setenv("ENCRYPTION_KEY", key)
    return key


def sample_form(name="Contact Form", **extra):
    form = {
        "id": "form_abc",
        "formId": "form_abc",
        "organizationId": "org_1",
        "projectId": "proj_1",
        "createdBy": "user_1",
        "name": name,
        "slug": "contact-form",
        "fieldConfigs": [{"path": "email", "label": "Email", "type": "email"}],
        "connectionString": "mongodb+srv://secret@host",
        "dataSource": {"vaultId": "vault_x"},
        "accessControl": {"public": True},
        "theme": {"primaryColor": "#00684A"},
    }
    form.update(extra)
    return form


def sample_workflow(name="Notify Team", node_types=("form-trigger",), **extra):
    workflow = {
        "id": "wf_abc",
        "orgId": "org_1",
        "projectId": "proj_1",
        "createdBy": "user_1",
        "lastModifiedBy": "user_1",
        "name": name,
        "canvas": {
            "nodes": [{"id": f"n{i}", "type": t} for i, t in enumerate(node_types)],
            "edges": [],
        },
        "settings": {"executionMode": "sequential"},
        "stats": {"totalExecutions": 12},
    }
    workflow.update(extra)
    return workflow
