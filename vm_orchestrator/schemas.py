from datetime import datetime
from typing import Literal, Union

from pydantic import BaseModel, Field


class StartCommand(BaseModel):
    action: Literal["start"]
    os_variant: str = "ubuntu"
    name: str | None = None
    duration: int | None = Field(default=None, ge=1)


class StopCommand(BaseModel):
    action: Literal["stop"]
    name: str = Field(min_length=1)


class DeleteCommand(BaseModel):
    action: Literal["delete"]
    name: str = Field(min_length=1)


class StatusCommand(BaseModel):
    action: Literal["status"]
    name: str = Field(min_length=1)


class ExtendCommand(BaseModel):
    action: Literal["extend"]
    name: str = Field(min_length=1)
    duration: int | None = Field(default=None, ge=1)


VMCommand = Union[
    StartCommand, StopCommand, DeleteCommand, StatusCommand, ExtendCommand
]


class Credentials(BaseModel):
    username: str
    password: str


class VMStarted(BaseModel):
    name: str
    public_address: str
    status: str
    os_variant: str
    credentials: Credentials
    expires_at: datetime


class VMState(BaseModel):
    name: str
    status: str


class VMStatusRead(BaseModel):
    name: str
    public_address: str | None
    status: str
    os_variant: str | None


class VMExtended(BaseModel):
    name: str
    status: str
    expires_at: datetime


class VMRecordRead(BaseModel):
    name: str
    os_variant: str
    status: str
    public_address: str | None
    requester_address: str
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
    last_error: str | None


class ErrorDetail(BaseModel):
    kind: str
    message: str


class ErrorResponse(BaseModel):
    error: ErrorDetail
