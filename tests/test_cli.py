import asyncio

import pytest
from pymongo.errors import DuplicateKeyError
from typer.testing import CliRunner

# Ensure import path includes src
import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from gateway import cli
from state.licenses import LicenseStore, is_valid_key_format
from state.models import LicenseStatus
from fakes import FakeCollection

KEY = "ABCD-EFGH-JKMN-PQRS"

runner = CliRunner()


class _FakeClient:
    def __init__(self):
        self.closed = False

    def close(self):
        self.closed = True


@pytest.fixture
def fake_mongo(monkeypatch):
    col = FakeCollection(unique=("key",))
    client = _FakeClient()

    async def fake_init_mongo(uri=None):
        return client, {"licenses": col}

    monkeypatch.setattr(cli, "init_mongo", fake_init_mongo)
    return col, client


@pytest.mark.asyncio
async def test_provision_keys_inserts_unused_keys():
    store = LicenseStore(collection=FakeCollection(unique=("key",)))
    keys = await cli.provision_keys(store, 5)
    assert len(set(keys)) == 5
    for key in keys:
        assert is_valid_key_format(key)
        assert (await store.get(key)).status == LicenseStatus.UNUSED


@pytest.mark.asyncio
async def test_provision_keys_redraws_on_collision(monkeypatch):
    store = LicenseStore(collection=FakeCollection(unique=("key",)))
    await store.create(KEY)
    drawn = iter([KEY, "WXYZ-2345-6789-ABCD"])
    monkeypatch.setattr(cli, "generate_key", lambda: next(drawn))

    assert await cli.provision_keys(store, 1) == ["WXYZ-2345-6789-ABCD"]


@pytest.mark.asyncio
async def test_revoke_key_normalizes_and_validates():
    store = LicenseStore(collection=FakeCollection(unique=("key",)))
    await store.create(KEY, status=LicenseStatus.ACTIVE)
    assert await cli.revoke_key(store, "not-a-key") is False
    assert await cli.revoke_key(store, " abcd-efgh-jkmn-pqrs ") is True
    assert (await store.get(KEY)).status == LicenseStatus.REVOKED


def test_generate_command_prints_created_keys(fake_mongo):
    col, client = fake_mongo
    result = runner.invoke(cli.app, ["generate", "--count", "3"])
    assert result.exit_code == 0, result.output

    assert len(col.docs) == 3
    for doc in col.docs:
        assert doc["status"] == "unused"
        assert doc["key"] in result.output
    assert client.closed is True


def test_revoke_command(fake_mongo):
    col, _ = fake_mongo
    store = LicenseStore(collection=col)
    asyncio.run(store.create(KEY, status=LicenseStatus.ACTIVE))

    result = runner.invoke(cli.app, ["revoke", KEY.lower()])
    assert result.exit_code == 0, result.output
    assert "Revoked" in result.output
    assert col.docs[0]["status"] == "revoked"


def test_revoke_command_unknown_key_fails(fake_mongo):
    result = runner.invoke(cli.app, ["revoke", KEY])
    assert result.exit_code == 1
    assert "No license to revoke" in result.output


def test_generate_command_reports_store_errors(monkeypatch):
    async def failing_init_mongo(uri=None):
        raise DuplicateKeyError("E11000", code=11000)

    monkeypatch.setattr(cli, "init_mongo", failing_init_mongo)
    result = runner.invoke(cli.app, ["generate", "-n", "1"])
    assert result.exit_code == 1
    assert "Error generating keys" in result.output
