from __future__ import annotations


class AdvisorError(Exception):
    """Base class for pipeline errors; none of them stop the run loop."""


class InvalidInput(AdvisorError, ValueError):
    pass


class InvalidK(InvalidInput):
    def __init__(self, k: object) -> None:
        super().__init__(f"k must be an integer >= 1, got {k!r}.")
        self.k = k


class IndexEmpty(AdvisorError):
    def __init__(self, message: str = "Procedure index has no procedures loaded.") -> None:
        super().__init__(message)


class EmbeddingFailure(AdvisorError):
    pass


class EmptyContext(AdvisorError):
    def __init__(self, trigger_class: str) -> None:
        super().__init__(f"No procedures retrieved for trigger class {trigger_class!r}.")
        self.trigger_class = trigger_class


class GenerationError(AdvisorError):
    def __init__(self, message: str, *, transient: bool = True) -> None:
        super().__init__(message)
        self.transient = transient


class GenerationTimeout(GenerationError):
    def __init__(self, timeout_sec: float | None = None) -> None:
        if timeout_sec is None:
            message = "Generation backend timed out."
        else:
            message = f"Generation backend exceeded {timeout_sec:.1f}s."
        super().__init__(message, transient=True)
        self.timeout_sec = timeout_sec


class SpeechSinkError(AdvisorError):
    pass
