# Rev 0.1.0
"""Error taxonomy.

Validation problems raise before anything is mutated. Remote failures never
raise past the dispatcher: they travel as ``RemoteResult.error``.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional


class ResearchOSError(Exception):
    pass


class ValidationError(ResearchOSError):
    pass


@dataclass(frozen=True)
class RemoteError:
    code: str             # "not_found", "http", "network", "exception", ...
    message: str = ""
    status: Optional[int] = None

    @property
    def is_not_found(self) -> bool:
        return self.code == "not_found"

    def __str__(self) -> str:
        if self.status is not None:
            return f"{self.code} (HTTP {self.status}): {self.message}"
        return f"{self.code}: {self.message}" if self.message else self.code


@dataclass(frozen=True)
class RemoteResult:
    data: Any = None
    error: Optional[RemoteError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def fail(cls, code: str, message: str = "", status: Optional[int] = None) -> "RemoteResult":
        return cls(error=RemoteError(code=code, message=message, status=status))
