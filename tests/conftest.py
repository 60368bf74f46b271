"""Shared fixtures: an in-memory SQLite store per test with foreign keys enforced."""
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import devchain_core.database  # noqa: F401  registers the foreign key pragma listener
from devchain_core import crud, schemas
from devchain_core.models import Base


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def project(db):
    return crud.create_project(db, schemas.ProjectCreate(name="Demo", root_path="/work/demo"))


@pytest.fixture
def other_project(db):
    return crud.create_project(db, schemas.ProjectCreate(name="Other", root_path="/work/other"))


@pytest.fixture
def statuses(db, project):
    """Default statuses of ``project`` in position order."""
    return crud.list_statuses(db, project.id).items


@pytest.fixture
def provider(db):
    return crud.create_provider(db, schemas.ProviderCreate(name="claude"))


@pytest.fixture
def profile(db, project, provider):
    return crud.create_agent_profile(db, schemas.AgentProfileCreate(
        project_id=project.id,
        name="Coder",
        provider_id=provider.id,
        temperature=0.7,
    ))


@pytest.fixture
def agent(db, project, profile):
    return crud.create_agent(db, schemas.AgentCreate(
        project_id=project.id,
        profile_id=profile.id,
        name="Builder",
    ))


@pytest.fixture
def make_epic(db, project, statuses):
    """Factory creating epics in ``project``, first status unless told otherwise."""

    def _make(title="Epic", status_id=None, parent_id=None, tags=None, **kwargs):
        return crud.create_epic(db, schemas.EpicCreate(
            project_id=kwargs.pop("project_id", project.id),
            title=title,
            status_id=status_id or statuses[0].id,
            parent_id=parent_id,
            tags=tags or [],
            **kwargs,
        ))

    return _make
