import pytest

from app.compliance.rbac import (
    PERMISSION_MODULES,
    apply_selection,
    clear_module,
    module_selection_state,
    select_module,
)

from conftest import client_for


def test_module_selection_is_set_algebra():
    picked = select_module({"docs.view"}, "templates")
    assert picked == {"docs.view"} | PERMISSION_MODULES["templates"]
    assert module_selection_state(picked, "templates") == "all"
    assert module_selection_state(picked, "documents") == "some"
    assert module_selection_state(picked, "inventory") == "none"
    assert clear_module(picked, "templates") == {"docs.view"}


def test_apply_selection():
    current = {"docs.view", "docs.edit"}
    assert apply_selection(current) == current
    assert apply_selection(current, permissions=["assets.view"]) == {"assets.view"}
    assert apply_selection(current, select_modules=["assets"], clear_modules=["documents"]) == set(PERMISSION_MODULES["assets"])
    with pytest.raises(KeyError):
        apply_selection(current, permissions=["docs.fly"])
    with pytest.raises(KeyError):
        apply_selection(current, select_modules=["spaceships"])


def test_permission_catalogue_is_grouped_by_module(admin_client):
    body = admin_client.get("/admin/permissions").get_json()
    modules = {m["module"]: {p["key"] for p in m["permissions"]} for m in body["modules"]}
    assert modules["documents"] == set(PERMISSION_MODULES["documents"])
    assert "assets.generate_number" in modules["assets"]


def test_create_and_edit_role(app, admin_client):
    r = admin_client.post(
        "/admin/roles",
        json={"key": "Auditor", "name": "Auditor", "permissions": ["docs.view"], "select_modules": ["templates"]},
    )
    assert r.status_code == 201, r.get_json()
    role = r.get_json()
    assert role["key"] == "auditor"
    assert set(role["permissions"]) == {"docs.view"} | PERMISSION_MODULES["templates"]
    assert role["modules"]["templates"] == "all"
    assert role["modules"]["documents"] == "some"
    assert role["modules"]["assets"] == "none"

    assert admin_client.post("/admin/roles", json={"key": "auditor"}).status_code == 409
    assert admin_client.post("/admin/roles", json={"key": "x", "permissions": ["nope"]}).status_code == 400
    assert admin_client.post("/admin/roles", json={"key": "y", "select_modules": ["nope"]}).status_code == 400

    r = admin_client.put(
        f"/admin/roles/{role['id']}/permissions",
        json={"clear_modules": ["templates"], "select_modules": ["assets"], "reason": "scope change"},
    )
    assert r.status_code == 200
    updated = r.get_json()
    assert set(updated["permissions"]) == {"docs.view"} | PERMISSION_MODULES["assets"]
    assert updated["modules"]["templates"] == "none"

    assert admin_client.put("/admin/roles/9999/permissions", json={}).status_code == 404

    keys = [x["key"] for x in admin_client.get("/admin/roles").get_json()["roles"]]
    assert "auditor" in keys

    events = admin_client.get("/admin/audit?action=role.").get_json()["events"]
    assert [e["action"] for e in events] == ["role.permissions.update", "role.create"]
    assert events[0]["reason"] == "scope change"
    assert events[0]["metadata"]["removed"] == sorted(PERMISSION_MODULES["templates"])


def test_role_admin_needs_permission(app):
    viewer = client_for(app, "viewer@example.com")
    r = viewer.get("/admin/roles")
    assert r.status_code == 403
    assert r.get_json()["details"]["missing_permission"] == "admin.view"


def test_login_me_logout(client):
    r = client.post("/auth/login", json={"email": "admin@example.com", "password": "wrong"})
    assert r.status_code == 401
    assert client.get("/auth/me").status_code == 401

    r = client.post("/auth/login", json={"email": "Admin@Example.com", "password": "pw"})
    assert r.status_code == 200
    me = client.get("/auth/me").get_json()["user"]
    assert me["email"] == "admin@example.com"
    assert "docs.approve" in me["permissions"]

    assert client.post("/auth/logout").status_code == 200
    assert client.get("/auth/me").status_code == 401


def test_login_rate_limit(client):
    for _ in range(5):
        assert client.post("/auth/login", json={"email": "viewer@example.com", "password": "bad"}).status_code == 401
    r = client.post("/auth/login", json={"email": "viewer@example.com", "password": "pw"})
    assert r.status_code == 429
    assert r.get_json()["error"] == "rate_limited"
