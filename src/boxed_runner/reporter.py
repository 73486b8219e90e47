from __future__ import annotations

import json
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any, Mapping

from .errors import ValidationError
from .execution.types import ExecutionOutcome, ExecutionRequest, OutcomeKind

JSON_CONTENT_TYPE = "application/json"
TEXT_CONTENT_TYPE = "text/plain; charset=utf-8"


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    """Caller-facing projection of an execution outcome.

    Example:
        ```python
        result = ExecutionResult(200, '{"result": "5\\\\n"}\\n', JSON_CONTENT_TYPE, OutcomeKind.SUCCESS)
        ```
    """

    status_code: int
    body: str
    content_type: str
    kind: OutcomeKind | None = None

    def json(self) -> Any:
        """Decode a JSON body.

        Example:
            ```python
            payload = result.json()
            ```
        """
        return json.loads(self.body)


def parse_request(body: bytes | str | Mapping[str, Any]) -> ExecutionRequest:
    """Validate an inbound ``{code, stdin?}`` payload.

    Blank ``code`` counts as malformed and is rejected here, before any
    workspace exists, rather than left to fail compilation with a 500.

    Example:
        ```python
        req = parse_request(b'{"code": "int main() {}", "stdin": "5\\\\n"}')
        ```
    """
    if isinstance(body, (bytes, str)):
        try:
            data = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ValidationError(f"Invalid JSON: {exc}") from exc
    else:
        data = body
    if not isinstance(data, Mapping):
        raise ValidationError("Request body must be a JSON object")
    code = data.get("code")
    if not isinstance(code, str):
        raise ValidationError("'code' must be a string")
    if not code.strip():
        raise ValidationError("'code' must not be empty")
    stdin = data.get("stdin")
    if stdin is not None and not isinstance(stdin, str):
        raise ValidationError("'stdin' must be a string when provided")
    return ExecutionRequest(source_code=code, stdin=stdin)


def report(outcome: ExecutionOutcome) -> ExecutionResult:
    """Map a classified outcome to a caller-facing response.

    Example:
        ```python
        result = report(ExecutionOutcome.success("5\\n"))
        ```
    """
    if outcome.kind is OutcomeKind.SUCCESS:
        body = json.dumps({"result": outcome.stdout}, ensure_ascii=False) + "\n"
        return ExecutionResult(HTTPStatus.OK, body, JSON_CONTENT_TYPE, outcome.kind)
    if outcome.kind is OutcomeKind.TIMEOUT:
        return ExecutionResult(
            HTTPStatus.GATEWAY_TIMEOUT, "Execution timed out", TEXT_CONTENT_TYPE, outcome.kind
        )
    if outcome.kind is OutcomeKind.FAILURE:
        return ExecutionResult(
            HTTPStatus.INTERNAL_SERVER_ERROR,
            f"Execution failed: {outcome.stderr}",
            TEXT_CONTENT_TYPE,
            outcome.kind,
        )
    return ExecutionResult(
        HTTPStatus.INTERNAL_SERVER_ERROR, "Internal Server Error", TEXT_CONTENT_TYPE, outcome.kind
    )


def validation_error(exc: ValidationError) -> ExecutionResult:
    """Build the 400 response for a rejected payload.

    Example:
        ```python
        result = validation_error(ValidationError("'code' must be a string"))
        ```
    """
    return ExecutionResult(HTTPStatus.BAD_REQUEST, f"Bad Request: {exc}", TEXT_CONTENT_TYPE)
