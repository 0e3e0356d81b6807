from datetime import timedelta

import pytest

from marketplace import IdentityUnresolved, Unauthenticated, resolve_user_id
from models import Session, User, db, utcnow


def make_session(user_id=None, email=None):
    session = Session(
        user_id=user_id,
        email=email,
        session_token=f"token-{user_id}-{email}",
        expires_at=utcnow() + timedelta(hours=1),
    )
    db.session.add(session)
    db.session.commit()
    return session


def test_identifier_in_session_wins(app, make_user):
    user_id = make_user("known@example.com")
    with app.app_context():
        session = make_session(user_id=user_id, email="someone-else@example.com")
        assert resolve_user_id(session) == user_id


def test_falls_back_to_email_lookup(app, make_user):
    user_id = make_user("lookup@example.com")
    with app.app_context():
        session = make_session(email="lookup@example.com")
        assert resolve_user_id(session) == user_id
        assert db.session.get(Session, session.id).user_id == user_id


def test_stale_identifier_falls_back_to_email(app, make_user):
    user_id = make_user("stale@example.com")
    with app.app_context():
        session = make_session(user_id=9999, email="stale@example.com")
        assert resolve_user_id(session) == user_id


def test_creates_minimal_account_for_unknown_email(app):
    with app.app_context():
        session = make_session(email="New.Reviewer@Example.com")
        user_id = resolve_user_id(session)

        user = db.session.get(User, user_id)
        assert user.email == "new.reviewer@example.com"
        assert user.role == "user"
        assert user.password_hash is None


def test_unresolvable_sessions_fail(app):
    with app.app_context():
        with pytest.raises(IdentityUnresolved):
            resolve_user_id(make_session())
        with pytest.raises(Unauthenticated):
            resolve_user_id(None)


def test_unresolvable_session_is_rejected_over_http(app, make_project):
    project_id = make_project()
    with app.app_context():
        make_session()
    client = app.test_client()
    client.set_cookie("session_token", "token-None-None")

    resp = client.post("/reviews", json={"project_id": project_id, "rating": 5, "comment": "hi"})

    assert resp.status_code == 401
    assert "log back in" in resp.get_json()["error"]
