"""
Shared pytest fixtures for the plan engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate, global item types seeded (autouse)
    - client: Flask test client (function-scoped)
    - organization / other_organization: Pre-created Organization entities
    - project / other_project: Pre-created Project per organization
    - item_types: {level: PlanItemType} for the five global types
    - org_headers: request headers carrying the organization context
    - make_item: factory creating plan items through the lifecycle service
"""

import pytest

from app import create_app
from app.models import db as _db
from app.models.plan import PlanItemType
from app.models.project import Organization, Project
from app.services.plan_item_service import create_plan_item, seed_default_item_types


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
        seed_default_item_types()
        _db.session.commit()
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Scope fixtures ───────────────────────────────────────────────────────


def _make_organization(name, slug, *, is_active=True):
    org = Organization(name=name, slug=slug, is_active=is_active)
    _db.session.add(org)
    _db.session.commit()
    return org


def _make_project(organization, name="Plan Project"):
    proj = Project(organization_id=organization.id, name=name)
    _db.session.add(proj)
    _db.session.commit()
    return proj


@pytest.fixture()
def organization():
    return _make_organization("Acme Corp", "acme")


@pytest.fixture()
def other_organization():
    return _make_organization("Globex", "globex")


@pytest.fixture()
def project(organization):
    return _make_project(organization)


@pytest.fixture()
def other_project(other_organization):
    return _make_project(other_organization, name="Globex Plan")


@pytest.fixture()
def item_types():
    """Global system types keyed by level (1=Workstream … 5=Subtask)."""
    types = PlanItemType.query.filter(PlanItemType.organization_id.is_(None)).all()
    return {t.level: t for t in types}


@pytest.fixture()
def org_headers(organization):
    return {
        "X-Organization-Id": str(organization.id),
        "X-User-Id": "42",
        "X-User-Email": "planner@acme.test",
    }


@pytest.fixture()
def make_item(project, organization, item_types):
    """Create a plan item in ``project``: make_item("Name", level=1, parent=None, **fields)."""

    def _make(name, *, level=1, parent=None, **fields):
        data = {
            "name": name,
            "item_type_id": item_types[level].id,
            "parent_id": parent.id if parent is not None else None,
            **fields,
        }
        item = create_plan_item(project.id, organization.id, data)
        _db.session.flush()
        return item

    return _make
