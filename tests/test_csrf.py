"""Tests for CSRF token generation and validation."""

from loginguard.service.csrf import (
    CsrfTokenStore,
    bind_csrf_context,
    csrf_context_var,
    generate_token,
    validate_token,
)


class TestValidateToken:
    def test_matching_tokens(self):
        token = generate_token()
        assert validate_token(token, token) is True

    def test_single_character_change_fails(self):
        token = generate_token()
        for index in (0, len(token) // 2, len(token) - 1):
            replacement = "A" if token[index] != "A" else "B"
            mutated = token[:index] + replacement + token[index + 1:]
            assert validate_token(mutated, token) is False

    def test_empty_or_missing_tokens_fail(self):
        token = generate_token()
        assert validate_token("", token) is False
        assert validate_token(token, "") is False
        assert validate_token(None, None) is False
        assert validate_token("", "") is False

    def test_prefix_fails(self):
        token = generate_token()
        assert validate_token(token[:-1], token) is False


class TestGenerateToken:
    def test_tokens_are_unique_and_urlsafe(self):
        tokens = {generate_token() for _ in range(100)}

        assert len(tokens) == 100
        assert all(len(t) >= 43 for t in tokens)
        assert all("+" not in t and "/" not in t for t in tokens)


class TestCsrfTokenStore:
    async def test_stored_token_follows_bound_context(self):
        store = CsrfTokenStore()
        first = store.issue("ctx-1")
        second = store.issue("ctx-2")

        with bind_csrf_context("ctx-1"):
            assert await store.get_stored_token() == first
        with bind_csrf_context("ctx-2"):
            assert await store.get_stored_token() == second

    async def test_no_context_has_no_token(self):
        store = CsrfTokenStore()
        store.issue("ctx-1")

        assert await store.get_stored_token() is None

    def test_context_is_restored(self):
        with bind_csrf_context("outer"):
            with bind_csrf_context("inner"):
                assert csrf_context_var.get() == "inner"
            assert csrf_context_var.get() == "outer"
        assert csrf_context_var.get() is None

    def test_discard_and_reissue(self):
        store = CsrfTokenStore()
        old = store.issue("ctx")
        new = store.issue("ctx")

        assert store.get("ctx") == new != old
        store.discard("ctx")
        assert store.get("ctx") is None
