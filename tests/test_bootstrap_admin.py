import importlib.util
from pathlib import Path

import pytest

from authcore.service.runtime import Runtime

_SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"
_script_spec = importlib.util.spec_from_file_location("bootstrap_admin", _SCRIPT)
bootstrap = importlib.util.module_from_spec(_script_spec)
_script_spec.loader.exec_module(bootstrap)


@pytest.fixture
def runtime(settings, clock):
    return Runtime(settings, clock=clock)


@pytest.mark.parametrize(
    "password,valid",
    [
        ("Short1!", False),
        ("alllowercaseletters", False),
        ("Longer-Passw0rd", True),
        ("UPPER lower 1234", True),
    ],
)
def test_validate_password(password, valid):
    assert bootstrap.validate_password(password) is valid


async def test_creates_admin(runtime):
    result = await bootstrap.bootstrap_admin("root@example.com", "Longer-Passw0rd", runtime=runtime)

    assert result["status"] == "created"
    assert runtime.store.find_by_email("root@example.com").role == "admin"


async def test_promotes_existing_user(runtime):
    await runtime.auth.register("bob@example.com", "Passw0rd!")

    result = await bootstrap.bootstrap_admin("bob@example.com", "Longer-Passw0rd", runtime=runtime)
    again = await bootstrap.bootstrap_admin("bob@example.com", "Longer-Passw0rd", runtime=runtime)

    assert result["status"] == "promoted"
    assert again["status"] == "already_admin"
    assert runtime.store.find_by_email("bob@example.com").role == "admin"


async def test_dry_run_changes_nothing(runtime):
    result = await bootstrap.bootstrap_admin(
        "root@example.com", "Longer-Passw0rd", dry_run=True, runtime=runtime
    )

    assert result["status"] == "dry_run"
    assert runtime.store.find_by_email("root@example.com") is None
