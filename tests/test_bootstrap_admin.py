import importlib.util
from pathlib import Path

from courseauth.service.runtime import get_runtime

ROOT = Path(__file__).resolve().parent.parent

_spec = importlib.util.spec_from_file_location(
    "bootstrap_admin", ROOT / "scripts" / "bootstrap_admin.py"
)
bootstrap_module = importlib.util.module_from_spec(_spec)
_spec.loader.exec_module(bootstrap_module)

PASSWORD = "Bootstrap-Passw0rd!"


def test_password_complexity():
    assert bootstrap_module.validate_password(PASSWORD)
    assert not bootstrap_module.validate_password("short1!A")
    assert not bootstrap_module.validate_password("alllowercaseletters")


async def test_creates_enabled_admin():
    result = await bootstrap_module.bootstrap_admin("Root@Example.com", PASSWORD)

    assert result["status"] == "created"
    assert result["email"] == "root@example.com"
    assert result["access_token"]
    user = get_runtime().store.get_user(result["user_id"])
    assert user.enabled is True
    assert user.roles == ["ADMIN"]
    principal = await get_runtime().auth.resolve_principal(f"Bearer {result['access_token']}")
    assert "admin:create" in principal.authorities


async def test_promotes_existing_user():
    runtime = get_runtime()
    registered = await runtime.auth.register(
        {
            "first_name": "Grace",
            "last_name": "Hopper",
            "email": "grace@example.com",
            "password": PASSWORD,
        }
    )
    await runtime.auth.drain_notifications()

    result = await bootstrap_module.bootstrap_admin("grace@example.com", PASSWORD)
    assert result == {
        "user_id": registered.user.id,
        "email": "grace@example.com",
        "status": "promoted",
    }
    user = runtime.store.get_user(registered.user.id)
    assert user.roles == ["ADMIN"]
    assert user.enabled is True

    again = await bootstrap_module.bootstrap_admin("grace@example.com", PASSWORD)
    assert again["status"] == "already_admin"


async def test_dry_run_changes_nothing():
    result = await bootstrap_module.bootstrap_admin("dry@example.com", PASSWORD, dry_run=True)
    assert result["status"] == "dry_run"
    assert get_runtime().store.get_user_by_email("dry@example.com") is None
