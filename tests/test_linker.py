"""
tests/test_linker.py -- Unit tests for loginflow/linker.py.

AccountLinker is called directly with an already-verified identity, so these
tests exercise the decision table without the callback machinery.
"""

from __future__ import annotations

import pytest

from auth.errors import AccountAlreadyConnected, IdentityAlreadyConnectedToDifferentAccount
from auth.events import USER_CONNECTED
from auth.models import OIDC_AUTH_METHOD, IdentityClaims, LocalAccount, TokenSet
from auth.tokens import hash_password
from loginflow.linker import AccountLinker


def _claims(external_id: str, upn: str | None = None) -> IdentityClaims:
    return IdentityClaims(subject=external_id, unique_id=external_id, username_hint=upn)


def _tokens(code: str) -> TokenSet:
    return TokenSet(access_token=f"at-{code}", id_token=f"id-{code}")


@pytest.fixture()
def linker(services) -> AccountLinker:
    return AccountLinker(services)


@pytest.fixture()
def bob(services) -> LocalAccount:
    services.accounts.create_user(LocalAccount(username="bob", hashed_password=hash_password("bobpass1234")))
    return services.accounts.get_by_username("bob")


class TestLink:
    def test_first_link_migrates_account(self, linker, services, events, manual_account) -> None:
        linked = linker.link("ext-a", "code-1", _tokens("code-1"), _claims("ext-a", "alice@x"), manual_account)

        assert linked.auth_method == OIDC_AUTH_METHOD
        record = services.tokens.get_by_external_id("ext-a")
        assert record.username == "alice"
        assert record.oidc_username == "alice@x"
        prev = services.accounts.get_prev_login(manual_account.id)
        assert prev.method == "manual"
        assert prev.password == manual_account.hashed_password
        assert events.kinds() == [USER_CONNECTED]

    def test_link_is_idempotent(self, linker, services, events, manual_account) -> None:
        linker.link("ext-a", "code-1", _tokens("code-1"), _claims("ext-a"), manual_account)
        again = services.accounts.get_by_username("alice")
        linker.link("ext-a", "code-2", _tokens("code-2"), _claims("ext-a"), again)

        records = services.tokens.list_all()
        assert len(records) == 1
        assert records[0].raw_auth_code == "code-2"
        assert events.kinds() == [USER_CONNECTED]

    def test_prev_login_written_only_once(self, linker, services, manual_account) -> None:
        linker.link("ext-a", "code-1", _tokens("code-1"), _claims("ext-a"), manual_account)
        # An operator unlinks the account and moves it to another method; a
        # later link must not replace the original backup.
        services.tokens.delete(services.tokens.get_by_external_id("ext-a").id)
        services.accounts.switch_auth_method(manual_account.id, "ldap")
        current = services.accounts.get_by_username("alice")
        linker.link("ext-b", "code-2", _tokens("code-2"), _claims("ext-b"), current)

        assert services.accounts.get_prev_login(manual_account.id).method == "manual"
        assert services.accounts.get_by_username("alice").auth_method == OIDC_AUTH_METHOD

    def test_identity_bound_to_other_account(self, linker, services, manual_account, bob) -> None:
        linker.link("ext-a", "code-1", _tokens("code-1"), _claims("ext-a"), manual_account)

        with pytest.raises(IdentityAlreadyConnectedToDifferentAccount):
            linker.link("ext-a", "code-2", _tokens("code-2"), _claims("ext-a"), bob)

        record = services.tokens.get_by_external_id("ext-a")
        assert record.username == "alice"
        assert record.raw_auth_code == "code-1"
        assert services.tokens.get_by_username("bob") is None
        assert services.accounts.get_by_username("bob").auth_method == "manual"

    def test_account_bound_to_other_identity(self, linker, services, manual_account) -> None:
        linker.link("ext-a", "code-1", _tokens("code-1"), _claims("ext-a"), manual_account)
        current = services.accounts.get_by_username("alice")

        with pytest.raises(AccountAlreadyConnected):
            linker.link("ext-b", "code-2", _tokens("code-2"), _claims("ext-b"), current)
        assert services.tokens.get_by_external_id("ext-b") is None

    def test_binding_created_between_lookups_is_rotated(self, linker, services, monkeypatch, manual_account) -> None:
        services.tokens.create("ext-a", "alice", "code-1", _tokens("code-1"))
        # The identity lookup runs before a concurrent callback commits its record.
        monkeypatch.setattr(services.tokens, "get_by_external_id", lambda external_id: None)

        linker.link("ext-a", "code-2", _tokens("code-2"), _claims("ext-a"), manual_account)

        records = services.tokens.list_all()
        assert len(records) == 1
        assert records[0].raw_auth_code == "code-2"
        assert services.accounts.get_by_username("alice").auth_method == OIDC_AUTH_METHOD

    def test_stale_record_for_missing_account_is_replaced(self, linker, services, manual_account) -> None:
        services.tokens.create("ext-a", "deleted-user", "old-code", _tokens("old-code"))

        linker.link("ext-a", "code-1", _tokens("code-1"), _claims("ext-a"), manual_account)

        records = services.tokens.list_all()
        assert len(records) == 1
        assert records[0].username == "alice"

    def test_connect_only(self, linker, services, manual_account) -> None:
        linked = linker.link("ext-a", "code-1", _tokens("code-1"), _claims("ext-a"), manual_account, connect_only=True)

        assert linked.auth_method == "manual"
        assert len(services.tokens.list_all()) == 1
        assert services.accounts.get_prev_login(manual_account.id) is None

    def test_sink_failure_does_not_block_link(self, linker, services, manual_account) -> None:
        class BrokenSink:
            def emit(self, kind, payload):
                raise RuntimeError("sink down")

        services.events = BrokenSink()
        linked = linker.link("ext-a", "code-1", _tokens("code-1"), _claims("ext-a"), manual_account)
        assert linked.auth_method == OIDC_AUTH_METHOD
