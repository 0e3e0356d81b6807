import io

import pytest
from werkzeug.security import generate_password_hash

from app import create_app
from marketplace import project_slug
from models import Project, User, db


PASSWORD = "secret123"


@pytest.fixture
def app(tmp_path):
    app = create_app(
        {
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": "sqlite://",
            "SECRET_KEY": "test-secret",
            "SESSION_COOKIE_SECURE": False,
            "UPLOAD_ROOT": str(tmp_path / "uploads"),
        }
    )
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def make_user(app):
    def _make(email, role="user", password=PASSWORD, name=None):
        with app.app_context():
            user = User(
                name=name or email.split("@")[0],
                email=email,
                password_hash=generate_password_hash(password) if password else None,
                role=role,
            )
            db.session.add(user)
            db.session.commit()
            return user.id

    return _make


@pytest.fixture
def login_as(app, make_user):
    """Fresh test client logged in as a new account."""

    def _login(email, role="user"):
        make_user(email, role=role)
        client = app.test_client()
        resp = client.post("/auth/login", json={"email": email, "password": PASSWORD})
        assert resp.status_code == 200, resp.get_json()
        return client

    return _login


@pytest.fixture
def buyer(login_as):
    return login_as("buyer@example.com")


@pytest.fixture
def admin(login_as):
    return login_as("admin@example.com", role="admin")


@pytest.fixture
def make_project(app):
    def _make(title="Starter Kit", for_sale=True, **extra):
        with app.app_context():
            project = Project(
                title=title,
                slug=project_slug(title),
                description="A ready-made template",
                price=25,
                images=["/uploads/images/cover.png"],
                technologies=["flask"],
                features=["auth"],
                project_type="Web Application",
                for_sale=for_sale,
                **extra,
            )
            db.session.add(project)
            db.session.commit()
            return project.id

    return _make


def submit_purchase(client, project_id, delivery_email="buyer@gmail.com", proof=True):
    data = {"project_id": str(project_id), "delivery_email": delivery_email}
    if proof:
        data["payment_proof"] = (io.BytesIO(b"fake-png"), "proof.png")
    return client.post("/purchases", data=data, content_type="multipart/form-data")
