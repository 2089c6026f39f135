"""Tests for engine and session lifecycle helpers."""
from __future__ import annotations

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

import leantrack.db as db_mod
from leantrack.db import get_session, get_session_factory, init_db, session_generator, session_scope
from leantrack.models import Project


@pytest.fixture()
def initialized(tmp_path):
    orig_engine = db_mod._engine
    orig_session = db_mod._SessionLocal
    init_db(tmp_path / "nested" / "leantrack.db")
    try:
        yield tmp_path / "nested" / "leantrack.db"
    finally:
        db_mod._engine.dispose()
        db_mod._engine = orig_engine
        db_mod._SessionLocal = orig_session


class TestSessionManagement:
    def test_init_creates_file(self, initialized):
        assert initialized.exists()

    def test_uninitialized_raises(self):
        orig_session = db_mod._SessionLocal
        try:
            db_mod._SessionLocal = None
            with pytest.raises(RuntimeError):
                get_session()
            with pytest.raises(RuntimeError):
                get_session_factory()
        finally:
            db_mod._SessionLocal = orig_session

    def test_session_scope(self, initialized):
        with session_scope() as sess:
            assert isinstance(sess, Session)
            project = Project(name="ScopeTest")
            sess.add(project)
            sess.commit()
            assert project.id is not None
        with session_scope() as sess:
            assert sess.execute(select(Project)).scalars().one().name == "ScopeTest"

    def test_session_scope_rollback(self, initialized):
        with pytest.raises(ValueError):
            with session_scope() as sess:
                sess.add(Project(name="WillFail"))
                sess.flush()
                raise ValueError("boom")
        with session_scope() as sess:
            assert sess.execute(select(Project)).scalars().all() == []

    def test_session_generator(self, initialized):
        gen = session_generator()
        sess = next(gen)
        assert isinstance(sess, Session)
        gen.close()

    def test_factory_sessions_are_independent(self, initialized):
        factory = get_session_factory()
        with factory() as a, factory() as b:
            assert a is not b
