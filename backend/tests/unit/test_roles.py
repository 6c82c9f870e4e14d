import pytest

from app.core import roles as roles_mod


class _BrokenRepo:
    async def get_user(self, user_id):
        raise RuntimeError("users table unavailable")


@pytest.mark.asyncio
async def test_load_account_reads_global_role(monkeypatch, repo):
    monkeypatch.delenv("ADMIN_EMAILS", raising=False)
    monkeypatch.setattr(roles_mod, "_repo", repo)

    account = await roles_mod.load_account({"id": "editor", "email": "editor@example.com"})

    assert account == {"id": "editor", "email": "editor@example.com", "role": "EDITOR_IN_CHIEF"}


@pytest.mark.asyncio
async def test_load_account_defaults_to_user(monkeypatch, repo):
    monkeypatch.delenv("ADMIN_EMAILS", raising=False)
    monkeypatch.setattr(roles_mod, "_repo", repo)
    repo.add_user("odd", role="superhero")

    assert (await roles_mod.load_account({"id": "odd", "email": None}))["role"] == "USER"
    assert (await roles_mod.load_account({"id": "ghost", "email": None}))["role"] == "USER"


@pytest.mark.asyncio
async def test_admin_email_elevates(monkeypatch, repo):
    monkeypatch.setenv("ADMIN_EMAILS", "Boss@Example.com, other@example.com")
    monkeypatch.setattr(roles_mod, "_repo", repo)

    account = await roles_mod.load_account({"id": "author", "email": "boss@example.com"})

    assert account["role"] == "ADMIN"


@pytest.mark.asyncio
async def test_lookup_failure_degrades_to_user(monkeypatch):
    monkeypatch.delenv("ADMIN_EMAILS", raising=False)
    monkeypatch.setattr(roles_mod, "_repo", _BrokenRepo())

    account = await roles_mod.load_account({"id": "u1", "email": "u1@example.com"})

    assert account["role"] == "USER"
