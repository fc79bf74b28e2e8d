"""Response envelope and request fragments shared by several routes."""

from typing import Generic, Literal, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """``{success, data}`` envelope returned by every successful route."""

    success: bool = True
    data: T


def ok(data) -> ApiResponse:
    return ApiResponse(data=data)


class DeviceInfo(BaseModel):
    deviceId: str = Field(..., min_length=1, max_length=256)
    deviceName: str = Field(..., min_length=1, max_length=256)
    platform: Literal["ios", "android"]
    osVersion: str = Field(..., max_length=64)
    appVersion: str = Field(..., max_length=64)
