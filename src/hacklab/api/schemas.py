"""Request and response bodies.

Field names accept both ``snake_case`` and the ``camelCase`` used by the
web front end.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _Body(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class StartLabRequest(_Body):
    lab_type: str = Field(min_length=1)


class StopLabRequest(_Body):
    pod_name: str = Field(min_length=1)
    namespace: str | None = None


class ValidateFlagRequest(_Body):
    lab_id: int
    difficulty: str
    flag: str
    pod_name: str | None = None
    namespace: str | None = None


class StartOSRequest(_Body):
    os_type: str = Field(default="debian", min_length=1)


class StopOSRequest(_Body):
    pod_name: str | None = None


class RestartOSRequest(_Body):
    pod_name: str = Field(min_length=1)
    os_type: str = Field(default="debian", min_length=1)


class Envelope(BaseModel):
    success: bool
    data: Any = None
    error: dict[str, Any] | None = None


def ok(data: Any = None) -> dict[str, Any]:
    return Envelope(success=True, data=data).model_dump()
