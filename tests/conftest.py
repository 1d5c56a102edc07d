import pytest
from sqlalchemy import select
from werkzeug.security import generate_password_hash

from app.compliance import auth, create_app
from app.compliance.db import session_scope
from app.compliance.models import Base, Permission, Role, User
from app.compliance.rbac import ALL_PERMISSIONS
from app.compliance.storage import LocalStorage

PASSWORD = "pw"

# email -> role key
TEST_USERS = {
    "admin@example.com": "admin",
    "approver1@example.com": "approver",
    "approver2@example.com": "approver",
    "viewer@example.com": "viewer",
}

ROLE_PERMISSIONS = {
    "admin": set(ALL_PERMISSIONS),
    "approver": {"docs.view", "docs.approve", "docs.download"},
    "viewer": {"docs.view"},
}


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_LOCAL_ROOT", str(tmp_path / "storage"))
    for k in ("PENDING_SCAN_POLICY", "MAX_VERSION_BYTES", "INVENTORY_CLASS_PLACEHOLDER", "DEFAULT_TENANT_ID"):
        monkeypatch.delenv(k, raising=False)
    auth.login_limiter.reset()

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        perms = {key: Permission(key=key, name=name) for key, name in ALL_PERMISSIONS.items()}
        roles = {}
        for role_key, keys in ROLE_PERMISSIONS.items():
            r = Role(key=role_key, name=role_key.title())
            r.permissions.extend(perms[k] for k in sorted(keys))
            roles[role_key] = r
        s.add_all(list(perms.values()) + list(roles.values()))
        for email, role_key in TEST_USERS.items():
            u = User(
                email=email,
                full_name=email.split("@")[0].title(),
                tenant_id="default",
                password_hash=generate_password_hash(PASSWORD),
                is_active=True,
            )
            u.roles.append(roles[role_key])
            s.add(u)

    yield app
    auth.login_limiter.reset()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def user_ids(app):
    with session_scope(app) as s:
        return {u.email: u.id for u in s.scalars(select(User)).all()}


def login(client, email, password=PASSWORD):
    """Log in and attach the session's CSRF token to every later request."""
    r = client.post("/auth/login", json={"email": email, "password": password})
    assert r.status_code == 200, r.get_json()
    with client.session_transaction() as sess:
        token = sess["csrf_token"]
    client.environ_base["HTTP_X_CSRF_TOKEN"] = token
    return r.get_json()["user"]


def client_for(app, email):
    c = app.test_client()
    login(c, email)
    return c


@pytest.fixture()
def admin_client(app):
    return client_for(app, "admin@example.com")


@pytest.fixture()
def db(app):
    """Service-level session inside an app context; committed at the end of the test."""
    with app.app_context():
        with session_scope(app) as s:
            yield s


@pytest.fixture()
def storage(tmp_path):
    return LocalStorage(root=tmp_path / "blobs")


def get_user(s, email):
    return s.scalars(select(User).where(User.email == email)).one()
