"""
Shared pytest fixtures for the BuildTrack test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - template: small seeded workflow template, line item ids in order
    - project: a persisted IN_PROGRESS project
"""

import pytest

from buildtrack import create_app
from buildtrack.models import db as _db
from buildtrack.services.project_locks import project_locks
from buildtrack.services.template_seed import seed_default_template
from buildtrack.services.template_store import get_template_store, reset_template_store

from factories import SMALL_TEMPLATE, create_project


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        # Template ids are reused after every recreate; drop the cached store.
        reset_template_store()
        project_locks.clear()
        yield
        reset_template_store()
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def template():
    """Seed the small template; return its line item ids in traversal order."""
    seed_default_template(SMALL_TEMPLATE)
    return [ref.line_item_id for ref in get_template_store()]


@pytest.fixture()
def project():
    return create_project()
