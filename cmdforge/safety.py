"""
🔒 Code Safety Validator

Heuristic screen over generated source, run before anything executes.
Deny-listed constructs reject outright. Otherwise the code must show at
least one recognised file-system operation, or it is rejected too.

This is a pre-filter, not a sandbox.
"""

from __future__ import annotations

from loguru import logger

from cmdforge.models import SafetyVerdict

DENY_PATTERNS = (
    "import subprocess",
    "from subprocess",
    "import os.system",
    "os.system(",
    "os.popen(",
    "eval(",
    "exec(",
    "__import__",
    "globals(",
    "locals(",
    "compile(",
)

ALLOW_PATTERNS = (
    "import os",
    "import shutil",
    "import pathlib",
    "from pathlib",
    "import glob",
    "os.path",
    "shutil.",
    "pathlib.",
    "glob.glob",
    "os.makedirs",
    "os.remove",
    "os.rename",
    "shutil.move",
    "shutil.copy",
    "shutil.rmtree",
)


class CodeSafetyValidator:
    def __init__(
        self,
        deny_patterns: tuple[str, ...] = DENY_PATTERNS,
        allow_patterns: tuple[str, ...] = ALLOW_PATTERNS,
    ):
        self.deny_patterns = tuple(p.lower() for p in deny_patterns)
        self.allow_patterns = tuple(p.lower() for p in allow_patterns)

    def review(self, code: str) -> SafetyVerdict:
        """Classify code, explaining which pattern decided it."""
        source = code.lower()

        for pattern in self.deny_patterns:
            if pattern in source:
                logger.info(f"[SAFETY] Rejected: contains '{pattern}'")
                return SafetyVerdict(
                    acceptable=False,
                    reason=f"disallowed construct '{pattern}'",
                    matched=pattern,
                )

        for pattern in self.allow_patterns:
            if pattern in source:
                return SafetyVerdict(
                    acceptable=True,
                    reason=f"recognised file operation '{pattern}'",
                    matched=pattern,
                )

        logger.info("[SAFETY] Rejected: no recognised file operation")
        return SafetyVerdict(acceptable=False, reason="no recognised safe file operation")

    def is_acceptable(self, code: str) -> bool:
        return self.review(code).acceptable
