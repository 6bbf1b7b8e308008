from enum import Enum


class DirectiveType(Enum):
    """Cache-Control directives emitted by the cache routes."""

    MAX_AGE = "max-age"
    NO_CACHE = "no-cache"
    NO_STORE = "no-store"
    MUST_REVALIDATE = "must-revalidate"
    PRIVATE = "private"
    STALE_WHILE_REVALIDATE = "stale-while-revalidate"


class CacheControl:
    def __init__(self) -> None:
        self.directives: list[str] = []

    def add(self, directive: DirectiveType, value: int | None = None) -> None:
        if value is not None:
            self.directives.append(f"{directive.value}={value}")
        else:
            self.directives.append(directive.value)

    def __str__(self) -> str:
        return ", ".join(self.directives)
