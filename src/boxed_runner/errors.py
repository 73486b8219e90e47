from __future__ import annotations


class BoxedRunnerError(Exception):
    """Base class for errors raised by boxed-runner.

    Example:
        ```python
        try:
            run_code("int main() {}", engine=engine)
        except BoxedRunnerError:
            ...
        ```
    """


class ValidationError(BoxedRunnerError):
    """Inbound payload is malformed; raised before any resource is allocated.

    Example:
        ```python
        raise ValidationError("'code' must be a string")
        ```
    """


class ResourceError(BoxedRunnerError):
    """Workspace allocation or source write failed on the host.

    Example:
        ```python
        raise ResourceError("Failed to create workspace: disk full")
        ```
    """


class EngineUnavailable(BoxedRunnerError):
    """Sandbox engine binary or daemon could not be reached.

    Example:
        ```python
        raise EngineUnavailable("Docker CLI was not found at 'docker'")
        ```
    """

    def __init__(self, message: str, *, command: list[str] | None = None) -> None:
        """Store the failing command next to the message.

        Example:
            ```python
            exc = EngineUnavailable("daemon down", command=["docker", "run"])
            ```
        """
        super().__init__(message)
        self.command = list(command or [])


class AdmissionRefused(BoxedRunnerError):
    """No sandbox slot became free before the admission timeout.

    Example:
        ```python
        raise AdmissionRefused("All 4 sandbox slots busy for 5s")
        ```
    """
