"""
tests/test_cli.py -- Tests for the operator command line in main.py.

seed() and create_user() run against in-memory stores; the argparse entry
point runs against a file database named by DATABASE_URL.
"""

from __future__ import annotations

import pytest

from auth.models import Role
from auth.store import UserStore
from core.config import get_settings
from ledger.store import LedgerStore
from main import SEED_ITEMS, SEED_STUDENTS, SEED_USERS, create_user, main, seed


@pytest.fixture
def user_store():
    store = UserStore("sqlite:///:memory:")
    yield store
    store.close()


@pytest.fixture
def cli_db(tmp_path, monkeypatch):
    """Point DATABASE_URL at a fresh file DB for the duration of one test."""
    url = f"sqlite:///{tmp_path / 'cli.db'}"
    monkeypatch.setenv("DATABASE_URL", url)
    get_settings.cache_clear()
    yield url
    get_settings.cache_clear()


class TestSeed:
    def test_first_run_creates_everything(self, user_store, ledger_store) -> None:
        created = seed(user_store, ledger_store)
        assert created == {"users": len(SEED_USERS), "students": len(SEED_STUDENTS), "items": len(SEED_ITEMS)}
        assert ledger_store.get_item_by_asset_tag("HDMI-001").name == "HDMI Cable"
        assert ledger_store.get_student_by_no("STU001").surname == "Smith"
        assert user_store.count_active_admins() == 1

    def test_second_run_is_a_no_op(self, user_store, ledger_store) -> None:
        seed(user_store, ledger_store)
        assert seed(user_store, ledger_store) == {"users": 0, "students": 0, "items": 0}
        assert len(user_store.list_users()) == len(SEED_USERS)
        assert len(ledger_store.list_students()) == len(SEED_STUDENTS)


class TestCreateUser:
    def test_returns_id(self, user_store) -> None:
        user_id = create_user(user_store, "desk@example.com", Role.CLERK, "long-enough-pw")
        assert user_id is not None
        assert user_store.get_by_id(user_id).role is Role.CLERK

    def test_duplicate_email_returns_none(self, user_store) -> None:
        create_user(user_store, "desk@example.com", Role.CLERK, "long-enough-pw")
        assert create_user(user_store, "DESK@example.com", Role.ADMIN, "long-enough-pw") is None


class TestMain:
    def test_no_command_prints_help(self, capsys) -> None:
        assert main([]) == 0
        assert "COMMAND" in capsys.readouterr().out

    def test_seed_then_audit_and_sweep(self, cli_db, capsys) -> None:
        assert main(["seed"]) == 0
        out = capsys.readouterr().out
        assert "Created 3 user(s)" in out
        assert "admin@example.com" in out

        assert main(["seed"]) == 0
        assert "Created 0 user(s), 0 student(s), 0 item(s)." in capsys.readouterr().out

        assert main(["sweep"]) == 0
        assert "0 loan(s) marked overdue." in capsys.readouterr().out

        assert main(["audit"]) == 0
        assert "No audit entries." in capsys.readouterr().out

    def test_create_user_command(self, cli_db, capsys) -> None:
        args = ["create-user", "--email", "first.admin@example.com", "--role", "admin", "--password", "long-enough-pw"]
        assert main(args) == 0
        assert "Created admin user first.admin@example.com" in capsys.readouterr().out

        assert main(args) == 1
        assert "already exists" in capsys.readouterr().out

    def test_create_user_rejects_short_password(self, cli_db, capsys) -> None:
        assert main(["create-user", "--email", "x@example.com", "--password", "short"]) == 1
        assert "at least 8 characters" in capsys.readouterr().out

    def test_create_user_rejects_password_over_bcrypt_limit(self, cli_db, capsys) -> None:
        assert main(["create-user", "--email", "x@example.com", "--password", "é" * 40]) == 1
        assert "at most 72 bytes" in capsys.readouterr().out
