"""Cryptographically secure handoff code generation.

A handoff code is a bearer capability: whoever presents it first receives the
stored session. Codes are therefore drawn from ``secrets`` (the OS CSPRNG),
never from ``random``.
"""

from __future__ import annotations

import re
import secrets
from typing import Optional

from sessionrelay.constants import (
    DEFAULT_HANDOFF_CODE_LENGTH,
    HANDOFF_CODE_ALPHABET,
    MAX_HANDOFF_CODE_LENGTH,
    MIN_HANDOFF_CODE_LENGTH,
)


class CodeGenerator:
    """Uniform random codes over HANDOFF_CODE_ALPHABET.

    Also owns the canonical form: ``normalize()`` uppercases and strips, and
    ``is_well_formed()`` checks a normalized code against the alphabet/length.
    """

    def __init__(
        self,
        length: int = DEFAULT_HANDOFF_CODE_LENGTH,
        alphabet: str = HANDOFF_CODE_ALPHABET,
    ) -> None:
        if not MIN_HANDOFF_CODE_LENGTH <= length <= MAX_HANDOFF_CODE_LENGTH:
            raise ValueError(
                f"code length must be between {MIN_HANDOFF_CODE_LENGTH} "
                f"and {MAX_HANDOFF_CODE_LENGTH}, got {length}"
            )
        self.length = length
        self.alphabet = alphabet
        self._pattern = re.compile(
            rf"^[{re.escape(alphabet)}]{{{length}}}$"
        )

    @property
    def space_size(self) -> int:
        """Number of distinct codes this generator can produce."""
        return len(self.alphabet) ** self.length

    def generate(self) -> str:
        return "".join(secrets.choice(self.alphabet) for _ in range(self.length))

    @staticmethod
    def normalize(code: Optional[str]) -> str:
        if not isinstance(code, str):
            return ""
        return code.strip().upper()

    def is_well_formed(self, code: str) -> bool:
        return bool(self._pattern.fullmatch(code))
