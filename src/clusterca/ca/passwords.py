# Copyright (c) clusterca Contributors. All rights reserved.
# Licensed under the MIT License.
"""
Secret generation for private-key passphrases and keystore passwords.
"""

import secrets
import string
from typing import Optional


class PasswordGenerator:
    """Generates random secrets from a cryptographically secure source.

    A previous secret can be passed in so a rotation never hands back the
    value it is meant to replace.

    Args:
        length: Default password length in characters.
        alphabet: Characters passwords are drawn from.
    """

    DEFAULT_LENGTH = 12
    ALPHABET = string.ascii_letters + string.digits

    def __init__(self, length: int = DEFAULT_LENGTH, alphabet: str = ALPHABET) -> None:
        if length < 1:
            raise ValueError(f"length must be positive, got: {length}")
        if len(set(alphabet)) < 2:
            raise ValueError("alphabet must contain at least two distinct characters")
        self.length = length
        self.alphabet = alphabet

    def generate_secret(self, length_bytes: int, previous: Optional[bytes] = None) -> bytes:
        """Return ``length_bytes`` random bytes, never equal to ``previous``."""
        if length_bytes < 1:
            raise ValueError(f"length_bytes must be positive, got: {length_bytes}")
        while True:
            secret = secrets.token_bytes(length_bytes)
            if secret != previous:
                return secret

    def generate_password(
        self,
        length: Optional[int] = None,
        previous: Optional[str] = None,
    ) -> str:
        """Return a random password that starts with a letter."""
        length = length or self.length
        letters = [c for c in self.alphabet if c.isalpha()] or list(self.alphabet)
        while True:
            first = secrets.choice(letters)
            rest = "".join(secrets.choice(self.alphabet) for _ in range(length - 1))
            password = first + rest
            if password != previous:
                return password
