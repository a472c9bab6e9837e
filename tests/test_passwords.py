"""Tests for PasswordGenerator."""

import string

import pytest

from clusterca.ca.passwords import PasswordGenerator


class TestGenerateSecret:
    def test_length(self):
        assert len(PasswordGenerator().generate_secret(32)) == 32

    def test_never_returns_previous(self):
        generator = PasswordGenerator()
        previous = generator.generate_secret(1)
        for _ in range(200):
            assert generator.generate_secret(1, previous=previous) != previous


class TestGeneratePassword:
    def test_default_length_and_alphabet(self):
        password = PasswordGenerator().generate_password()
        assert len(password) == 12
        assert set(password) <= set(string.ascii_letters + string.digits)
        assert password[0] in string.ascii_letters

    def test_custom_length(self):
        assert len(PasswordGenerator().generate_password(length=40)) == 40

    def test_never_returns_previous(self):
        generator = PasswordGenerator(length=1, alphabet="ab")
        for _ in range(50):
            assert generator.generate_password(previous="a") == "b"

    @pytest.mark.parametrize("kwargs", [{"length": 0}, {"alphabet": "aaaa"}])
    def test_invalid_arguments(self, kwargs):
        with pytest.raises(ValueError):
            PasswordGenerator(**kwargs)
