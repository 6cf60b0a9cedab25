"""Tests for argon2id password verification."""

from argon2 import PasswordHasher, Type

from taptab.service.passwords import PasswordVerifier


class TestPasswordVerifier:
    """verify() answers booleans and never raises for bad input."""

    def test_hash_is_argon2id_and_salted(self, passwords):
        first = passwords.hash("CorrectHorse9!")
        second = passwords.hash("CorrectHorse9!")

        assert first.startswith("$argon2id$")
        assert first != second
        assert "CorrectHorse9!" not in first

    def test_correct_password(self, passwords):
        stored = passwords.hash("CorrectHorse9!")
        assert passwords.verify("CorrectHorse9!", stored) is True

    def test_wrong_password(self, passwords):
        stored = passwords.hash("CorrectHorse9!")
        assert passwords.verify("wrong", stored) is False

    def test_missing_hash_still_runs_verification(self):
        calls = []

        class CountingHasher(PasswordHasher):
            def verify(self, hash, password):
                calls.append(hash)
                return super().verify(hash, password)

        passwords = PasswordVerifier(
            CountingHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)
        )

        assert passwords.verify("anything", None) is False
        assert passwords.verify("anything", "") is False
        assert len(calls) == 2

    def test_malformed_hash_is_false(self, passwords):
        assert passwords.verify("CorrectHorse9!", "not-a-hash") is False
        assert passwords.verify("CorrectHorse9!", "$2b$12$abcdefghijklmnopqrstuv") is False

    def test_needs_rehash_on_parameter_change(self, passwords):
        weak = passwords.hash("CorrectHorse9!")
        stronger = PasswordVerifier(
            PasswordHasher(time_cost=2, memory_cost=16, parallelism=1, type=Type.ID)
        )

        assert passwords.needs_rehash(weak) is False
        assert stronger.needs_rehash(weak) is True
        assert stronger.verify("CorrectHorse9!", weak) is True

    def test_needs_rehash_for_foreign_hash(self, passwords):
        assert passwords.needs_rehash("not-a-hash") is True
