"""Unit tests for credkeeper/auth/csrf.py — CsrfTokenStore."""

from __future__ import annotations

import pytest

from credkeeper.auth.csrf import CsrfTokenStore, requires_validation
from tests.conftest import FakeClock


class TestRequiresValidation:
    @pytest.mark.parametrize("method", ["GET", "HEAD", "OPTIONS", "TRACE", "get"])
    def test_safe_methods_exempt(self, method: str) -> None:
        assert requires_validation(method) is False

    @pytest.mark.parametrize("method", ["POST", "PUT", "PATCH", "DELETE"])
    def test_state_changing_methods(self, method: str) -> None:
        assert requires_validation(method) is True


class TestTokenFor:
    def test_token_is_64_hex_chars(self, csrf_store: CsrfTokenStore) -> None:
        token = csrf_store.token_for("42")
        assert len(token) == 64
        int(token, 16)

    def test_unexpired_token_reused(self, csrf_store: CsrfTokenStore, clock: FakeClock) -> None:
        first = csrf_store.token_for("42")
        clock.advance(3599)
        assert csrf_store.token_for("42") == first

    def test_expired_token_replaced(self, csrf_store: CsrfTokenStore, clock: FakeClock) -> None:
        first = csrf_store.token_for("42")
        clock.advance(3600)
        assert csrf_store.token_for("42") != first

    def test_anonymous_mirrored_under_global(self, csrf_store: CsrfTokenStore) -> None:
        token = csrf_store.token_for(None)
        assert csrf_store.token_for("anonymous") == token
        assert len(csrf_store) == 2

    def test_sessions_get_distinct_tokens(self, csrf_store: CsrfTokenStore) -> None:
        assert csrf_store.token_for("1") != csrf_store.token_for("2")


class TestValidate:
    def test_matching_token(self, csrf_store: CsrfTokenStore) -> None:
        token = csrf_store.token_for("42")
        assert csrf_store.validate("42", token) is True

    def test_missing_token(self, csrf_store: CsrfTokenStore) -> None:
        csrf_store.token_for("42")
        assert csrf_store.validate("42", None) is False
        assert csrf_store.validate("42", "") is False

    def test_unknown_string_rejected(self, csrf_store: CsrfTokenStore) -> None:
        csrf_store.token_for("42")
        assert csrf_store.validate("42", "unknown") is False

    def test_other_sessions_token_rejected(self, csrf_store: CsrfTokenStore) -> None:
        other = csrf_store.token_for("7")
        csrf_store.token_for("42")
        assert csrf_store.validate("42", other) is False

    def test_expired_token_rejected_and_removed(
        self, csrf_store: CsrfTokenStore, clock: FakeClock
    ) -> None:
        token = csrf_store.token_for("42")
        clock.advance(3601)
        assert csrf_store.validate("42", token) is False
        assert len(csrf_store) == 0

    def test_anonymous_token_valid_for_new_session(self, csrf_store: CsrfTokenStore) -> None:
        """A token fetched before login validates for the session created right after."""
        token = csrf_store.token_for(None)
        assert csrf_store.validate("42", token) is True

    def test_shared_token_survives_another_visitors_login(
        self, csrf_store: CsrfTokenStore
    ) -> None:
        token = csrf_store.token_for(None)
        assert csrf_store.token_for(None) == token  # second visitor, same shared token

        assert csrf_store.validate("7", token) is True
        assert csrf_store.token_for("7") == token
        assert csrf_store.validate(None, token) is True
        assert csrf_store.token_for(None) == token

    def test_adoption_keeps_existing_session_token(self, csrf_store: CsrfTokenStore) -> None:
        own = csrf_store.token_for("42")
        shared = csrf_store.token_for(None)
        assert csrf_store.validate("42", shared) is True
        assert csrf_store.token_for("42") == own
        assert csrf_store.validate("42", own) is True

    def test_adoption_disabled(self, clock: FakeClock) -> None:
        store = CsrfTokenStore(ttl_seconds=3600, bind_preauth_on_use=False, clock=clock)
        token = store.token_for(None)
        assert store.validate("42", token) is True
        assert store.validate("43", token) is True
        assert len(store) == 2

    def test_adopted_token_keeps_original_age(
        self, csrf_store: CsrfTokenStore, clock: FakeClock
    ) -> None:
        token = csrf_store.token_for(None)
        clock.advance(3000)
        assert csrf_store.validate("42", token) is True
        clock.advance(601)
        assert csrf_store.validate("42", token) is False

    def test_anonymous_caller_uses_anonymous_token(self, csrf_store: CsrfTokenStore) -> None:
        token = csrf_store.token_for(None)
        assert csrf_store.validate(None, token) is True
        assert csrf_store.validate("anonymous", token) is True


class TestPerClientPreauth:
    """Tokens minted for a csrf_client id before the caller has a session."""

    def test_clients_get_distinct_tokens(self, csrf_store: CsrfTokenStore) -> None:
        a = csrf_store.token_for(None, client_id="client-a")
        b = csrf_store.token_for(None, client_id="client-b")
        assert a != b
        assert csrf_store.token_for(None, client_id="client-a") == a
        assert len(csrf_store) == 2  # no anonymous/global mirror

    def test_valid_for_own_client_only(self, csrf_store: CsrfTokenStore) -> None:
        a = csrf_store.token_for(None, client_id="client-a")
        csrf_store.token_for(None, client_id="client-b")
        assert csrf_store.validate(None, a, client_id="client-a") is True
        assert csrf_store.validate(None, a, client_id="client-b") is False
        assert csrf_store.validate(None, a) is False

    def test_login_of_one_client_leaves_the_other_valid(
        self, csrf_store: CsrfTokenStore
    ) -> None:
        a = csrf_store.token_for(None, client_id="client-a")
        b = csrf_store.token_for(None, client_id="client-b")

        assert csrf_store.validate("7", a, client_id="client-a") is True
        assert csrf_store.validate(None, b, client_id="client-b") is True
        assert csrf_store.validate("8", b, client_id="client-b") is True

    def test_adopted_once(self, csrf_store: CsrfTokenStore) -> None:
        token = csrf_store.token_for(None, client_id="client-a")
        assert csrf_store.validate("42", token, client_id="client-a") is True
        assert csrf_store.token_for("42") == token
        # bound to session 42 only
        assert csrf_store.validate("43", token, client_id="client-a") is False
        assert csrf_store.validate(None, token, client_id="client-a") is False

    def test_consumed_even_when_session_keeps_its_own_token(
        self, csrf_store: CsrfTokenStore
    ) -> None:
        own = csrf_store.token_for("42")
        pre = csrf_store.token_for(None, client_id="client-a")
        assert csrf_store.validate("42", pre, client_id="client-a") is True
        assert csrf_store.token_for("42") == own
        assert csrf_store.validate("43", pre, client_id="client-a") is False


class TestRevokeAndSweep:
    def test_revoke(self, csrf_store: CsrfTokenStore) -> None:
        token = csrf_store.token_for("42")
        csrf_store.revoke("42")
        assert csrf_store.validate("42", token) is False

    def test_sweep_removes_only_stale(self, csrf_store: CsrfTokenStore, clock: FakeClock) -> None:
        csrf_store.token_for("1")
        clock.advance(2000)
        csrf_store.token_for("2")
        clock.advance(1700)

        assert csrf_store.sweep() == 1
        assert len(csrf_store) == 1
        assert csrf_store.sweep() == 0
