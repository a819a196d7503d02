"""
Request validation and prompt-injection screening
"""
import re
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Pattern

from pydantic import ValidationError

from stream_proxy.errors import InvalidRequest
from stream_proxy.models import ChatRequest, MAX_MESSAGES

DEFAULT_INJECTION_PATTERNS = [
    r"ignore\s+(previous|all|above)\s+(instructions|prompts|rules)",
    r"disregard\s+all",
    r"you\s+are\s+now",
    r"новые\s+инструкции",
    r"<\|im_start\|>",
    r"\[SYSTEM\]",
]


class InjectionPolicy:
    """Case-insensitive denylist of prompt-injection signatures.

    This is a heuristic screen. It rejects on any match and makes no claim
    of catching every injection attempt.
    """

    def __init__(self, patterns: Optional[Iterable[str]] = None):
        if patterns is None:
            patterns = DEFAULT_INJECTION_PATTERNS
        self.patterns: List[Pattern[str]] = [re.compile(p, re.IGNORECASE) for p in patterns]

    @classmethod
    def with_extra(cls, extra: Iterable[str]) -> "InjectionPolicy":
        return cls([*DEFAULT_INJECTION_PATTERNS, *extra])

    def matches(self, text: str) -> bool:
        return any(pattern.search(text) for pattern in self.patterns)


@dataclass(frozen=True)
class ValidationResult:
    ok: bool
    reason: Optional[str] = None
    request: Optional[ChatRequest] = None


class RequestValidator:
    """Pure pass/fail predicate over a deserialized request body"""

    def __init__(self, policy: Optional[InjectionPolicy] = None):
        self.policy = policy or InjectionPolicy()

    def validate(self, body: Any) -> ValidationResult:
        """Run every check in order and stop at the first failure"""
        if not isinstance(body, dict) or "messages" not in body:
            return ValidationResult(False, "body must be an object with a messages field")

        messages = body["messages"]
        if not isinstance(messages, list):
            return ValidationResult(False, "messages must be a list")
        if not 1 <= len(messages) <= MAX_MESSAGES:
            return ValidationResult(False, f"messages length {len(messages)} outside [1, {MAX_MESSAGES}]")

        try:
            request = ChatRequest.model_validate(body)
        except ValidationError as e:
            first = e.errors()[0]
            location = ".".join(str(part) for part in first["loc"])
            return ValidationResult(False, f"{location}: {first['msg']}")

        for index, message in enumerate(request.messages):
            if self.policy.matches(message.content):
                return ValidationResult(False, f"messages.{index}: matched injection pattern")

        return ValidationResult(True, request=request)

    def require(self, body: Any) -> ChatRequest:
        """Return the parsed request or raise InvalidRequest"""
        result = self.validate(body)
        if not result.ok:
            raise InvalidRequest(result.reason)
        return result.request
