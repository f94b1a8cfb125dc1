import importlib.util
from pathlib import Path

import pytest

from tokenrelay.service.runtime import get_runtime

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_user.py"


@pytest.fixture(scope="module")
def bootstrap():
    spec = importlib.util.spec_from_file_location("bootstrap_user", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.mark.parametrize(
    "password, ok",
    [
        ("Short1!", False),
        ("alllowercaseletters", False),
        ("lowercase-and-digits-123", True),
        ("Correct-Horse-Battery", True),
    ],
)
def test_validate_password(bootstrap, password, ok):
    assert bootstrap.validate_password(password) is ok


def test_creates_user(bootstrap):
    result = bootstrap.bootstrap_user("ops@example.com", "Correct-Horse-42", role="admin")

    assert result["status"] == "created"
    user = get_runtime().store.get_user_by_email("ops@example.com")
    assert user.id == result["user_id"]
    assert user.role == "admin"


def test_dry_run_changes_nothing(bootstrap):
    result = bootstrap.bootstrap_user("ops@example.com", "Correct-Horse-42", dry_run=True)

    assert result == {"user_id": None, "email": "ops@example.com", "status": "dry_run"}
    assert get_runtime().store.get_user_by_email("ops@example.com") is None


async def test_password_reset_ends_session(bootstrap):
    runtime = get_runtime()
    user = runtime.auth.create_user("ops@example.com", "Correct-Horse-42")
    await runtime.auth.login("ops@example.com", "Correct-Horse-42")

    result = bootstrap.bootstrap_user("ops@example.com", "Battery-Staple-43")

    assert result["status"] == "password_reset"
    assert runtime.session_store.get(user.id) is None
    assert runtime.auth.verify_password(user.id, "Battery-Staple-43") is True
    assert runtime.auth.verify_password(user.id, "Correct-Horse-42") is False


def test_cli_creates_user(bootstrap):
    code = bootstrap.main(["--email", " CLI@Example.com ", "--password", "Correct-Horse-42"])

    assert code == 0
    assert get_runtime().store.get_user_by_email("cli@example.com") is not None


def test_cli_rejects_weak_password(bootstrap):
    with pytest.raises(SystemExit) as excinfo:
        bootstrap.main(["--email", "cli@example.com", "--password", "short"])

    assert excinfo.value.code == 2
    assert get_runtime().store.get_user_by_email("cli@example.com") is None


def test_cli_stores_email_in_login_form(bootstrap):
    code = bootstrap.main(
        ["--email", " Ops\u200b@\uff25xample.com ", "--password", "Correct-Horse-42"]
    )

    assert code == 0
    assert get_runtime().store.get_user_by_email("ops@example.com") is not None


def test_cli_rejects_invalid_email(bootstrap):
    with pytest.raises(SystemExit) as excinfo:
        bootstrap.main(["--email", "not-an-address", "--password", "Correct-Horse-42"])

    assert excinfo.value.code == 2
    assert get_runtime().store.get_user_by_email("not-an-address") is None


async def test_bootstrapped_user_can_log_in(bootstrap):
    bootstrap.bootstrap_user(" Mixed.Case@Example.COM", "Correct-Horse-42")

    pair = await get_runtime().auth.login("mixed.case@example.com", "Correct-Horse-42")

    assert pair.subject == get_runtime().store.get_user_by_email("mixed.case@example.com").id
