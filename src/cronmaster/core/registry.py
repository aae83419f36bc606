"""Handler registry for CronMaster.

Jobs name their handler with a string; the registry maps that name to a
``JobHandler`` registered explicitly at startup. Unknown names are
reported before scheduling begins instead of failing quietly at run time.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterable

from loguru import logger

from cronmaster.config import ConfigError

if TYPE_CHECKING:
    from cronmaster.models import Job, JobConfig


class UnknownHandlerError(ConfigError):
    """A job refers to a handler name nobody registered."""

    pass


@dataclass
class HandlerResult:
    """What a handler reports back to the scheduler."""

    success: bool
    details: str | None = None
    issues_found: int = 0
    fixes_applied: int = 0
    severity: str | None = None
    verification_passed: bool = False

    @classmethod
    def coerce(cls, value: Any) -> "HandlerResult":
        """Accept a HandlerResult, a plain dict, or None (treated as success)."""
        if isinstance(value, HandlerResult):
            return value
        if value is None:
            return cls(success=True)
        if isinstance(value, dict):
            return cls(
                success=bool(value.get("success", False)),
                details=value.get("details"),
                issues_found=int(value.get("issues_found", value.get("issuesFound", 0)) or 0),
                fixes_applied=int(value.get("fixes_applied", value.get("fixesApplied", 0)) or 0),
                severity=value.get("severity"),
                verification_passed=bool(value.get("verification_passed", False)),
            )
        raise TypeError(f"Handler returned unsupported result type {type(value).__name__}")

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "details": self.details,
            "issues_found": self.issues_found,
            "fixes_applied": self.fixes_applied,
            "severity": self.severity,
            "verification_passed": self.verification_passed,
        }


class JobHandler(ABC):
    """Interface every job handler implements."""

    name: str = ""

    @abstractmethod
    async def run(self, job: "Job") -> HandlerResult | dict | None:
        """Execute once for ``job``; raise to signal failure."""
        pass


HandlerFunc = Callable[["Job"], Awaitable[Any]]


class FunctionHandler(JobHandler):
    """Adapts a plain coroutine function to the handler interface."""

    def __init__(self, name: str, func: HandlerFunc):
        self.name = name
        self._func = func

    async def run(self, job: "Job") -> HandlerResult | dict | None:
        return await self._func(job)


class HandlerRegistry:
    """Name -> handler map."""

    def __init__(self):
        self._handlers: dict[str, JobHandler] = {}

    def register(self, handler: JobHandler, name: str | None = None) -> JobHandler:
        """Register a handler under its own name (or ``name``)."""
        key = name or handler.name
        if not key:
            raise ValueError("Handler has no name")
        if key in self._handlers:
            logger.warning(f"Handler '{key}' re-registered, replacing previous one")
        self._handlers[key] = handler
        return handler

    def handler(self, name: str) -> Callable[[HandlerFunc], HandlerFunc]:
        """Decorator registering a coroutine function as a handler.

        Usage:
            @registry.handler("audit.scan")
            async def scan(job): ...
        """

        def decorator(func: HandlerFunc) -> HandlerFunc:
            self.register(FunctionHandler(name, func))
            return func

        return decorator

    def resolve(self, name: str) -> JobHandler:
        """Look up a handler by name."""
        try:
            return self._handlers[name]
        except KeyError:
            raise UnknownHandlerError(f"No handler registered as '{name}'") from None

    def validate(self, jobs: Iterable["JobConfig"]) -> None:
        """Raise if any job names a handler that is not registered."""
        missing = sorted({f"{job.name} -> {job.handler}" for job in jobs if job.handler not in self._handlers})
        if missing:
            raise UnknownHandlerError(f"Unknown handlers: {', '.join(missing)}")

    def __contains__(self, name: str) -> bool:
        return name in self._handlers

    def names(self) -> list[str]:
        return sorted(self._handlers)
