from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict

T = TypeVar("T")

SUCCESS_CODE = 0


class ApiResponse(BaseModel, Generic[T]):
    code: int | str = SUCCESS_CODE
    msg: str = "success"
    data: T | None = None

    model_config = ConfigDict(from_attributes=True)
