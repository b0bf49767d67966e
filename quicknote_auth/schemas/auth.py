from pydantic import BaseModel, Field
from typing import Optional


class CodeRequest(BaseModel):
    code: str = Field(max_length=16)


class ExistingSecretRequest(BaseModel):
    secret: str = Field(min_length=16, max_length=128)


class AuthStateResponse(BaseModel):
    state: str
    error: Optional[str] = None
    device_name: Optional[str] = None
    provisioning_uri: Optional[str] = None
    formatted_secret: Optional[str] = None
    partition_key: Optional[str] = None
    display_name: Optional[str] = None
