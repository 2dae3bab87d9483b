"""Integration tests for CLI."""

import json
import os
import subprocess
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

from marketcore.document_store import JsonDocumentStore
from marketcore.models import Address, LineItem, Role, User
from marketcore.staging import StagingArea
from marketcore.users import TokenAuthority, UserDirectory

JWT_SECRET = "cli-test-secret"


def run_marketcore(args: list[str], cwd: Path, data_dir: Path) -> subprocess.CompletedProcess:
    """Run marketcore CLI command against a JSON store."""
    env = dict(os.environ)
    env.update(
        {
            "DATABASE_URL": f"file://{data_dir}",
            "JWT_SECRET": JWT_SECRET,
            "APP_ENV": "test",
        }
    )
    return subprocess.run(
        [sys.executable, "-m", "marketcore.cli"] + args,
        cwd=cwd,
        env=env,
        capture_output=True,
        text=True,
    )


@pytest.fixture
def data_dir(temp_dir):
    return temp_dir / "data"


def stage_checkout(store, txn_id, when):
    staging = StagingArea(store, clock=lambda: when)
    staging.stage(
        f"temp-{txn_id}",
        "buyer-1",
        [LineItem("prod-1", 1, 100.0, "seller-a")],
        Address(),
        txn_id,
        "INR",
    )


class TestSweepStaging:
    def test_removes_only_expired(self, temp_dir, data_dir):
        store = JsonDocumentStore(data_dir)
        stage_checkout(store, "order_old", datetime(2020, 1, 1, tzinfo=timezone.utc))
        stage_checkout(store, "order_new", datetime.now(timezone.utc))

        result = run_marketcore(["sweep-staging"], temp_dir, data_dir)

        assert result.returncode == 0
        assert "Removed 1 expired temp order(s)" in result.stdout
        remaining = store.collection("temp_orders").find({})
        assert [d["_id"] for d in remaining] == ["temp-order_new"]

    def test_json_output(self, temp_dir, data_dir):
        result = run_marketcore(["sweep-staging", "--json"], temp_dir, data_dir)

        assert result.returncode == 0
        assert json.loads(result.stdout) == {"removed": 0}

    def test_database_url_override(self, temp_dir, data_dir):
        other = temp_dir / "other"
        stage_checkout(JsonDocumentStore(other), "order_old", datetime(2020, 1, 1, tzinfo=timezone.utc))

        result = run_marketcore(
            ["sweep-staging", "--json", "--database-url", f"file://{other}"], temp_dir, data_dir
        )

        assert json.loads(result.stdout) == {"removed": 1}


class TestCreateIndexes:
    def test_json_store_has_nothing_to_create(self, temp_dir, data_dir):
        result = run_marketcore(["create-indexes"], temp_dir, data_dir)

        assert result.returncode == 0
        assert "Nothing to create" in result.stdout


class TestIssueToken:
    def test_token_for_known_user(self, temp_dir, data_dir):
        UserDirectory(JsonDocumentStore(data_dir)).add_user(
            User("buyer-1", "Asha Buyer", "asha@example.com", Role.BUYER, is_verified=True)
        )

        result = run_marketcore(["issue-token", "buyer-1"], temp_dir, data_dir)

        assert result.returncode == 0
        token = result.stdout.strip()
        assert TokenAuthority(JWT_SECRET).user_id_from(token) == "buyer-1"

    def test_unknown_user(self, temp_dir, data_dir):
        result = run_marketcore(["issue-token", "ghost"], temp_dir, data_dir)

        assert result.returncode == 1
        assert "Error:" in result.stderr


class TestHelp:
    def test_no_command_prints_help(self, temp_dir, data_dir):
        result = run_marketcore([], temp_dir, data_dir)

        assert result.returncode == 0
        assert "sweep-staging" in result.stdout

    def test_version(self, temp_dir, data_dir):
        result = run_marketcore(["--version"], temp_dir, data_dir)

        assert result.returncode == 0
        assert "marketcore 0.1.0" in result.stdout
