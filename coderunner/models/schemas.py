from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictInt, StrictStr


class ExecuteRequest(BaseModel):
    # code and language are checked by the request validator, not here, so that a
    # missing field is reported the same way as every other rejected request.
    model_config = ConfigDict(populate_by_name=True)

    code: StrictStr | None = Field(None, description="Source code to execute.")
    language: StrictStr | None = Field(None, description="Language identifier, see /languages.")
    input: StrictStr | None = Field(None, description="Optional stdin passed to the program.")
    timeout_ms: StrictInt | None = Field(
        None,
        alias="timeoutMs",
        ge=1,
        description="Optional wall-clock budget; may only lower the configured timeout.",
    )


class ExecuteResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    stdout: StrictStr
    stderr: StrictStr
    execution_time: StrictInt = Field(alias="executionTime")
    exit_code: StrictInt = Field(alias="exitCode")
    timeout: StrictBool = False
    error_kind: StrictStr = Field("none", alias="errorKind")
    stdout_truncated: StrictBool = Field(False, alias="stdoutTruncated")
    stderr_truncated: StrictBool = Field(False, alias="stderrTruncated")
    error: StrictStr | None = None


class LanguagesResponse(BaseModel):
    languages: list[StrictStr]


class HealthResponse(BaseModel):
    status: StrictStr
    service: StrictStr
    timestamp: StrictStr
