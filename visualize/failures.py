from typing import Optional


class VisualFailure(RuntimeError):
    code = "UNEXPECTED_ERROR"

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        if code:
            self.code = code
        self.message = message


class DependencyLoadTimeout(VisualFailure):
    code = "DEPENDENCY_LOAD_TIMEOUT"

    def __init__(self, dependency: str, timeout_seconds: float) -> None:
        super().__init__(f"{dependency} did not load within {timeout_seconds:g}s")
        self.dependency = dependency
        self.timeout_seconds = timeout_seconds


class DependencyLoadFailed(VisualFailure):
    code = "DEPENDENCY_LOAD_FAILED"

    def __init__(self, dependency: str, detail: str) -> None:
        super().__init__(f"failed to load {dependency}: {detail}")
        self.dependency = dependency


class InvalidIdentifier(VisualFailure):
    code = "INVALID_IDENTIFIER"

    def __init__(self, identifier: str, detail: str = "") -> None:
        message = f"invalid identifier {identifier!r}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.identifier = identifier


class RemoteFetchError(VisualFailure):
    code = "REMOTE_FETCH_ERROR"

    def __init__(self, status: int, url: str) -> None:
        super().__init__(f"structure fetch failed: {status} {url}")
        self.status = status
        self.url = url


class PayloadResolutionFailed(VisualFailure):
    code = "PAYLOAD_RESOLUTION_FAILED"


class RenderFailed(VisualFailure):
    code = "RENDER_FAILED"
