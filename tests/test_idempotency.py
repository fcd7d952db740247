"""Tests for idempotency key derivation."""

from sparkgate.utils.idempotency import creation_key, generate_idempotency_key


class TestGenerateIdempotencyKey:

    def test_deterministic(self):
        assert generate_idempotency_key("user-1", "a", 1) == generate_idempotency_key("user-1", "a", 1)

    def test_sha256_hex(self):
        key = generate_idempotency_key("user-1", "a")
        assert len(key) == 64
        int(key, 16)

    def test_delimiter_cannot_collide(self):
        assert generate_idempotency_key("u", "a-b", "c") != generate_idempotency_key("u", "a", "b-c")
        assert generate_idempotency_key("u", "a:b", "c") != generate_idempotency_key("u", "a", "b:c")

    def test_none_distinct_from_empty_string(self):
        assert generate_idempotency_key("u", None) != generate_idempotency_key("u", "")

    def test_missing_principal_is_anonymous(self):
        assert generate_idempotency_key(None, "x") == generate_idempotency_key("", "x")
        assert generate_idempotency_key(None, "x") == generate_idempotency_key("anonymous", "x")

    def test_principals_are_isolated(self):
        assert generate_idempotency_key("alice", "x") != generate_idempotency_key("bob", "x")

    def test_dict_fields_are_order_independent(self):
        assert (
            generate_idempotency_key("u", {"a": 1, "b": 2})
            == generate_idempotency_key("u", {"b": 2, "a": 1})
        )


class TestCreationKey:

    def test_same_request_same_key(self):
        assert creation_key("u", "Einstein", "clone", "Albert Einstein") == creation_key(
            "u", "Einstein", "clone", "Albert Einstein",
        )

    def test_training_source_matters(self):
        assert creation_key("u", "Bot", "link", context_link="https://a.example") != creation_key(
            "u", "Bot", "link", context_link="https://b.example",
        )

    def test_mode_matters(self):
        assert creation_key("u", "Bot", "keywords") != creation_key("u", "Bot", "manual")

    def test_distinct_from_generic_key_with_same_fields(self):
        assert creation_key("u", "Bot", "manual") != generate_idempotency_key(
            "u", "Bot", "manual", None, None,
        )
