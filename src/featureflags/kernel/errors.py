from __future__ import annotations
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List


@dataclass(eq=False)
class ProblemDetails(Exception):
    type: str = "about:blank"
    title: str = "Flag operation failed"
    detail: str = ""
    status: int = 400
    code: Optional[str] = None
    meta: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "type": self.type,
            "title": self.title,
            "detail": self.detail,
            "status": self.status,
            "error": self.title,
        }
        if self.code is not None:
            data["code"] = self.code
        if self.meta is not None:
            data["meta"] = self.meta
        return data

    def __str__(self) -> str:
        return f"{self.title} ({self.code or ''}): {self.detail}"


@dataclass(eq=False)
class ValidationError(ProblemDetails):
    """Malformed caller input. Not retryable."""
    title: str = "Validation failed"
    status: int = 400
    code: Optional[str] = "E_VALIDATION"
    errors: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["validation_errors"] = list(self.errors)
        return data


@dataclass(eq=False)
class NotFound(ProblemDetails):
    title: str = "Flag not found"
    status: int = 404
    code: Optional[str] = "E_NOT_FOUND"


@dataclass(eq=False)
class AlreadyExists(ProblemDetails):
    title: str = "Flag with this name already exists"
    status: int = 409
    code: Optional[str] = "E_ALREADY_EXISTS"


@dataclass(eq=False)
class CircularDependency(ProblemDetails):
    title: str = "Circular dependency detected"
    status: int = 400
    code: Optional[str] = "E_CIRCULAR_DEPENDENCY"


@dataclass(eq=False)
class MissingActiveDependencies(ProblemDetails):
    """Enable blocked; `missing` holds dependency names in encounter order."""
    title: str = "Missing active dependencies"
    status: int = 400
    code: Optional[str] = "E_MISSING_DEPENDENCIES"
    missing: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["missing_dependencies"] = list(self.missing)
        return data


@dataclass(eq=False)
class StoreUnavailable(ProblemDetails):
    """Store/connectivity failure or deadline expiry. Safe to retry."""
    title: str = "Flag store unavailable"
    status: int = 503
    code: Optional[str] = "E_STORE_UNAVAILABLE"

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["retryable"] = True
        return data
